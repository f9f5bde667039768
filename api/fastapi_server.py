import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import config
from monitoring.logging_utils import setup_logging
from strategy.exceptions import SignalBotError, UpstreamUnavailable


bot_system = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global bot_system
    from main import SignalBotSystem
    bot_system = SignalBotSystem()
    task = asyncio.create_task(bot_system.start())
    try:
        yield
    finally:
        if bot_system:
            await bot_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Signal Bot API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.section('api').get('cors_origins') or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ActionRequest(BaseModel):
    user_id: str
    percentage: Optional[float] = None


class SellRequest(BaseModel):
    user_id: str
    percentage: float = 100.0


def _system():
    if bot_system is None:
        raise HTTPException(status_code=503, detail="Signal bot not initialized")
    return bot_system


async def _user(system, user_id: str):
    user = await system.store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "system_running": bot_system.running if bot_system else False
    }


@app.get("/api/signals")
async def get_signals(user_id: str):
    system = _system()
    user = await _user(system, user_id)
    try:
        signals = await system.actions.eligible_signals(user)
    except UpstreamUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return {
        "signals": signals,
        "count": len(signals),
        "timestamp": datetime.utcnow().isoformat()
    }


@app.post("/api/signals/auto-execute")
async def auto_execute():
    system = _system()
    results = await system.auto_execution.run_sweep()
    return {
        "results": [r.to_dict() for r in results],
        "executed": sum(1 for r in results if r.success),
        "count": len(results)
    }


@app.post("/api/signals/{signal_id}/{action}")
async def signal_action(signal_id: str, action: str, request: ActionRequest):
    system = _system()
    result = await system.actions.handle_action(signal_id, request.user_id, action, request.percentage)
    return result.to_dict()


@app.get("/api/cycles/{user_id}")
async def get_cycles(user_id: str, open_only: bool = False):
    system = _system()
    cycles = await system.cycles.list_for_user(user_id, open_only=open_only)
    out = []
    for cycle in cycles:
        entry = cycle.to_dict()
        if cycle.is_open:
            entry['accumulation'] = await system.cycles.accumulation(user_id, cycle.token)
        out.append(entry)
    return {"cycles": out, "count": len(out)}


@app.post("/api/cycles/{cycle_id}/sell")
async def sell_cycle(cycle_id: str, request: SellRequest):
    system = _system()
    user = await _user(system, request.user_id)
    try:
        trade = await system.executor.sell_position(user, cycle_id, request.percentage)
    except SignalBotError as exc:
        return {"success": False, "reason": exc.reason, "message": exc.message}
    return {"success": True, "trade": trade.to_dict()}


@app.get("/api/portfolio/{user_id}")
async def get_portfolio(user_id: str, refresh: bool = False):
    system = _system()
    user = await _user(system, user_id)
    portfolio = await system.reconciler.refresh(user) if refresh else await system.store.get_portfolio(user_id)
    if portfolio is None:
        raise HTTPException(status_code=404, detail=f"No portfolio snapshot for user {user_id}")
    return portfolio.to_dict()


@app.get("/api/risks")
async def get_risks(exchange: str = 'binance'):
    system = _system()
    try:
        risks = await system.ingestor.fetch_risks(exchange)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except UpstreamUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return {"exchange": exchange, "risks": risks}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
