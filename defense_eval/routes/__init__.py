"""
defense_eval/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from defense_eval.routes import evaluator

router = APIRouter()

router.include_router(evaluator.router)
