import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request

from config import settings
from db_models import FinalResponse, IdentifyRequest
from db_setup import ContactStore
from errors import InvalidInput, ReconciliationError
from logging_config import configure_logging
from reconciliation import ContactReconciler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    store = ContactStore(settings.database_path, timeout=settings.database_timeout)
    store.init_schema()
    app.state.store = store
    yield


app = FastAPI(
    title="Contact Identity Reconciliation API",
    version="1.0.0",
    lifespan=lifespan,
)


def get_reconciler(request: Request) -> ContactReconciler:
    return ContactReconciler(request.app.state.store)


@app.get("/")
async def root():
    return {"message": "Identity reconciliation API is up"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, reconciler: ContactReconciler = Depends(get_reconciler)):
    email = request.email
    phone = request.phoneNumber

    if not email and not phone:
        raise HTTPException(status_code=400, detail="Either email or phoneNumber must be provided")

    try:
        contact = reconciler.identify(email, phone)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReconciliationError as exc:
        logger.exception("Contact identification failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return FinalResponse(contact=contact)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
