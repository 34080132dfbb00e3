"""Error taxonomy.

Only ValidationError and NotFound are raised to callers. The others are raised
by collaborators (runtime, load balancer, metric sources) and absorbed by the
component that owns them, which records a DeploymentEvent instead.
"""
from __future__ import annotations


class RSCError(Exception):
    pass


class ValidationError(RSCError):
    """Malformed task definition or policy input, rejected at submission."""


class NotFound(RSCError):
    pass


class LaunchFailure(RSCError):
    """A task could not be started (capacity, image pull, runtime error)."""


class ProbeFailure(RSCError):
    pass


class RegistrationFailure(RSCError):
    """The traffic-routing component refused or did not answer a (de)registration."""


class MetricUnavailable(RSCError):
    pass
