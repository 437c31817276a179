"""
juryboard/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from juryboard.routes import scores, reports, permissions, automation, competitions, structure, realtime

router = APIRouter()

# Scoring
router.include_router(scores.router)

# Reporting
router.include_router(reports.router)
router.include_router(realtime.router)

# Administration
router.include_router(permissions.router)
router.include_router(competitions.router)
router.include_router(structure.router)
router.include_router(automation.router)
