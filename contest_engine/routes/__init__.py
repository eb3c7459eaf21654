"""
contest_engine/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from contest_engine.routes import contests, leaderboard

router = APIRouter()

router.include_router(contests.router)
router.include_router(leaderboard.router)
