from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def route_health():
    return {"status": "ok"}
