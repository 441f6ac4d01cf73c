# slotbook/health.py
from fastapi import APIRouter

from slotbook.dependencies.services import get_runtime

router = APIRouter()

@router.get("/health")
def health():
    runtime = get_runtime()
    return {
        "ok": True,
        "pending_offers": runtime.cascade.pending_timer_count,
        "sweep_running": runtime.sweeper.running,
    }
