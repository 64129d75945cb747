from fastapi import APIRouter

from syncbridge.api.routes import ledger

api_router = APIRouter()
api_router.include_router(ledger.router)
