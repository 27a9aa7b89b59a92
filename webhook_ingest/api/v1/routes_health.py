from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    stats = await request.app.state.services.ledger.get_event_stats()
    return {"status": "ok", "webhooks": stats.model_dump()}
