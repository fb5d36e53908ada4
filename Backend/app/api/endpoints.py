from fastapi import APIRouter

from app.api.routes import ai_jobs, validation

router = APIRouter()

router.include_router(validation.router, tags=["validation"])
router.include_router(ai_jobs.router, tags=["ai-jobs"])
