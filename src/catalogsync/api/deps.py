"""Request-scoped dependencies."""
from fastapi import Request

from catalogsync.scheduler.jobs import build_continuation_queue
from catalogsync.sync.import_service import CatalogImportService


def get_import_service(request: Request) -> CatalogImportService:
    """Import service whose continuations go to the app's scheduler."""
    engine = request.app.state.engine
    queue = build_continuation_queue(request.app.state.scheduler, engine)
    return CatalogImportService(engine=engine, queue=queue)
