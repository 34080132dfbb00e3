"""Rolling Service Controller (RSC).

Single-process controller for replicated, load-balanced container services:
 - immutable, versioned task definitions
 - per-task health probing (start grace, interval, timeout, retries)
 - rolling updates bounded by max-percent / min-healthy-percent
 - load balancer registration with drain-before-stop
 - target tracking auto scaling with cooldowns
"""

__version__ = "0.1.0"
