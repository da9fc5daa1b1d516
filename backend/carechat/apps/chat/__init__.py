"""Chat package.

Keep package import side-effect free so tooling (e.g. Alembic model import)
does not pull in the gateway or the FastAPI router.
"""

__all__: list[str] = []
