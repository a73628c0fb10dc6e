# app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_ipd,
    routes_ipd_ws,
)

api_router = APIRouter()

# IPD bed board
api_router.include_router(routes_ipd.router, prefix="/ipd", tags=["IPD Beds"])
api_router.include_router(routes_ipd_ws.router,
                          prefix="/ipd",
                          tags=["IPD Beds (live)"])
