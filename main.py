"""Run the controller API: ``uvicorn main:app`` or ``python main.py``."""
import uvicorn

from rsc.api import create_app
from rsc.logger import setup_logging

setup_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
