"""
Expose the FastAPI application factory.

Run the service with Uvicorn using the module entry point:

```sh
python -m coderunner.api
```

or directly with ``uvicorn coderunner.api:create_app --factory``.
"""

from .main import create_app

__all__ = ["create_app"]
