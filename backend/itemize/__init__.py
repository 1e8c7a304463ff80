"""Receipt ingestion and warranty enrichment backend.

Contains the FastAPI application, SQLAlchemy models, Pydantic schemas,
the service layer (ingest, dispatch, reaper, warranty resolution) and the
dramatiq worker entry point.

To run the API locally you can execute:

```bash
uvicorn itemize.api.main:app --reload
```

Configuration is read from environment variables or a ``.env`` file at
the project root. See ``itemize.core.config``.
"""

__all__: list[str] = []
