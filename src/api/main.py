"""
FastAPI application entry-point.
"""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import catalog, nlq, reports

app = FastAPI(
    title="Ledger Query Copilot",
    version="0.1.0",
    description="Plain-language questions over crypto ledger data, confirmed before they run",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(nlq.router, prefix="/nlq", tags=["NLQ"])
app.include_router(reports.router, prefix="/reports", tags=["Reports"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/health")
def health():
    return {"status": "ok"}
