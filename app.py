"""ASGI entry point: ``uvicorn app:app`` or ``LOCAL_RUN=1 python app.py``."""

import os

from edge.app import app

__all__ = ["app"]


if __name__ == "__main__" and os.getenv("LOCAL_RUN") == "1":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
