"""FastAPI REST API for Hook0.

This module exposes event ingestion, delivery history and replay.

Example:
    ```python
    import uvicorn
    from hook0.api import create_app

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8080)
    ```

Or run directly:
    ```bash
    uvicorn hook0.api:app
    ```
"""

from .app import app, create_app
from .router import router

__all__ = [
    "app",
    "create_app",
    "router",
]
