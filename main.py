from __future__ import annotations

import logging
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might need env vars
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes.workbooks import router as workbooks_router
from services.engine_config import get_engine_settings


logging.basicConfig(
    level=getattr(logging, get_engine_settings().log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Gridbook Sheet Service")

# Allow any origin in local dev mode.
# This should be tightened for production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(workbooks_router)


@app.get("/")
async def root():
    return {"status": "ok"}
