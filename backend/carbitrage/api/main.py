from fastapi import FastAPI

from backend.carbitrage.core.logging import configure_logging
from .routes import crawl, dispatch, fingerprints, ingest, listings, preflight, stubs

configure_logging()

app = FastAPI(title="Carbitrage Reconciliation API", version="0.1.0")

app.include_router(ingest.router, prefix="/ingest", tags=["ingest"])
app.include_router(stubs.router, prefix="/stubs", tags=["stubs"])
app.include_router(crawl.router, prefix="/crawl", tags=["crawl"])
app.include_router(dispatch.router, prefix="/dispatch", tags=["dispatch"])
app.include_router(preflight.router, prefix="/preflight", tags=["preflight"])
app.include_router(fingerprints.router, prefix="/fingerprints", tags=["fingerprints"])
app.include_router(listings.router, prefix="/listings", tags=["listings"])
