from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
import logging
import os

from database import get_db, init_db, ping
from ledger_api import router as ledger_router
from ledger_config import LedgerConfig

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Fuel MRN Ledger API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ledger_router)


@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("Fuel ledger started with config %s", LedgerConfig.from_env().to_dict())


@app.get("/")
def read_root():
    return {"message": "Fuel MRN Ledger API is running"}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        ping(db)
    except OperationalError as e:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {e}")
    return {"status": "ok"}
