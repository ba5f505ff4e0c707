"""
DQN Trading Agent Service - FastAPI Application

Provides REST API endpoints for:
- Training DQN agents on supplied, backend or simulated bars
- Deploying agents to portfolios and serving live decisions
- Online learning from realized outcomes
- Checkpoint listing and rollback
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, BackgroundTasks, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .agent import new_agent_id
from .agent_config import (
    PRESET_DQN_CONFIGS,
    build_dqn_config,
    build_environment_config,
    build_training_options,
)
from .errors import (
    AgentExistsError,
    AgentNotFoundError,
    AlreadyDeployedError,
    CheckpointNotFoundError,
    ConfigError,
    IncompatibleCheckpointError,
    NoActiveDeployment,
)
from .market_data import BackendMarketDataProvider
from .service import RLTradingService
from .state_encoder import MarketState

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

service = RLTradingService()

# Training logs storage - keeps last 500 log lines per agent
training_logs: Dict[str, deque] = {}
MAX_LOG_LINES = 500


def add_training_log(agent_id: str, message: str, level: str = "info"):
    """Add a log entry for a training session"""
    if agent_id not in training_logs:
        training_logs[agent_id] = deque(maxlen=MAX_LOG_LINES)

    log_entry = {
        "timestamp": datetime.now().isoformat(),
        "level": level,
        "message": message
    }
    training_logs[agent_id].append(log_entry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info(f"Starting {settings.service_name} v{settings.version}")
    logger.info(f"Device: {settings.device_info}")
    restored = service.restore_agents()
    logger.info(f"Restored {len(restored)} agent(s) from {settings.checkpoint_dir}")
    yield
    service.shutdown()
    logger.info("Shutting down DQN Trading Service")


app = FastAPI(
    title="DQN Trading Agent Service",
    description="Deep Q-Network agents for autonomous trading decisions with online learning",
    version=settings.version,
    debug=settings.debug,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Error Mapping ==============

@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(AgentNotFoundError)
@app.exception_handler(CheckpointNotFoundError)
@app.exception_handler(NoActiveDeployment)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AlreadyDeployedError)
@app.exception_handler(AgentExistsError)
@app.exception_handler(IncompatibleCheckpointError)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ============== Pydantic Models ==============

class BarData(BaseModel):
    """Single bar; only close is required"""
    timestamp: Optional[Union[int, str]] = Field(default=None, description="Unix ms or ISO timestamp")
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: float = Field(..., gt=0)
    volume: float = 0.0


class TrainRequest(BaseModel):
    """Request to train an agent"""
    symbol: str = Field(..., description="Symbol the bars belong to")
    data: Optional[List[BarData]] = Field(
        default=None,
        description="Historical bars, oldest first (simulated bars when omitted)"
    )
    preset: str = Field(default="default", description="Base hyperparameter preset")
    config: Dict[str, Any] = Field(default_factory=dict, description="Hyperparameter overrides")
    options: Dict[str, Any] = Field(default_factory=dict, description="Episode budget and evaluation cadence")
    environment: Dict[str, Any] = Field(default_factory=dict, description="Simulator overrides")


class TrainFromBackendRequest(BaseModel):
    """Request to train using data from backend"""
    symbol: str
    days: int = Field(default=365, ge=30, le=3650, description="Days of historical data to fetch")
    preset: str = "default"
    config: Dict[str, Any] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)


class DeployRequest(BaseModel):
    agent_id: str
    portfolio_id: str
    risk_limits: Optional[Dict[str, float]] = None


class OutcomeRequest(BaseModel):
    """Realized outcome of a previous decision"""
    state: Union[MarketState, List[float]]
    action: int
    reward: float
    next_state: Union[MarketState, List[float]]
    done: bool = False


class RollbackRequest(BaseModel):
    version: int = Field(..., ge=1)


def _resolve_config(preset: str, overrides: Dict[str, Any]):
    base = PRESET_DQN_CONFIGS.get(preset)
    if base is None:
        raise HTTPException(status_code=404, detail=f"Preset not found: {preset}")
    return build_dqn_config({**base.model_dump(), **overrides})


def _start_training(
    background_tasks: BackgroundTasks,
    symbol: str,
    bars: Optional[List[Dict[str, Any]]],
    request: Union[TrainRequest, TrainFromBackendRequest],
    fetch_days: Optional[int] = None,
) -> Dict[str, Any]:
    config = _resolve_config(request.preset, request.config)
    options = build_training_options(request.options)
    build_environment_config(symbol, **request.environment)
    agent_id = new_agent_id(symbol)

    def log_message(message: str, level: str = "info"):
        add_training_log(agent_id, message, level)

    def run_training_task():
        """Synchronous wrapper that runs the async training in a new event loop"""
        async def train_async():
            kwargs = dict(
                config=config,
                options=options,
                environment=request.environment,
                agent_id=agent_id,
                log_callback=log_message,
            )
            try:
                if fetch_days is not None:
                    log_message(f"📥 Fetching {fetch_days} days of {symbol} from backend...")
                    await service.train_agent_from_provider(
                        symbol, BackendMarketDataProvider(), fetch_days, **kwargs
                    )
                else:
                    await service.train_agent_async(symbol, bars, **kwargs)
            except Exception as e:
                logger.error(f"Training failed: {e}")
                add_training_log(agent_id, f"❌ Training failed: {str(e)}", "error")

        asyncio.run(train_async())

    background_tasks.add_task(run_training_task)

    return {
        "message": f"Training started for {symbol}",
        "agent_id": agent_id,
        "symbol": symbol,
        "status": "starting",
        "config": config.model_dump(),
    }


# ============== Health Endpoints ==============

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": settings.version,
        "commit": settings.commit,
        "build_time": settings.build_time,
        "device_info": settings.device_info,
    }


@app.get("/info")
async def service_info():
    """Get service information"""
    return {
        "service": settings.service_name,
        "version": settings.version,
        "commit": settings.commit,
        "build_time": settings.build_time,
        "device": settings.device,
        "checkpoint_dir": settings.checkpoint_dir,
        "agents_count": len(service.registry),
    }


# ============== Training Endpoints ==============

@app.post("/train")
async def train_agent(request: TrainRequest, background_tasks: BackgroundTasks):
    """
    Start training an agent with provided (or simulated) bars.

    Training runs in the background. Use /train/status/{agent_id} to check progress.
    """
    bars = [bar.model_dump(exclude_none=True) for bar in request.data] if request.data else None
    return _start_training(background_tasks, request.symbol, bars, request)


@app.post("/train/from-backend")
async def train_from_backend(request: TrainFromBackendRequest, background_tasks: BackgroundTasks):
    """Train an agent by fetching historical data from the backend service"""
    return _start_training(background_tasks, request.symbol, None, request, fetch_days=request.days)


@app.get("/train/status/{agent_id}")
async def get_training_status(agent_id: str):
    status = service.get_training_status(agent_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No training found for: {agent_id}")
    return status


@app.get("/train/logs/{agent_id}")
async def get_training_logs(agent_id: str, since: int = 0):
    """Get training log lines, optionally only those after index `since`"""
    logs = list(training_logs.get(agent_id, []))
    return {
        "agent_id": agent_id,
        "logs": logs[since:],
        "total": len(logs),
    }


# ============== Deployment & Serving ==============

@app.post("/deploy")
async def deploy_agent(request: DeployRequest):
    deployment = service.deploy_agent(request.agent_id, request.portfolio_id, request.risk_limits)
    return deployment.to_dict()


@app.get("/deployments")
async def list_deployments():
    return [d.to_dict() for d in service.deployments.list_deployments()]


@app.post("/decision/{portfolio_id}")
async def get_decision(portfolio_id: str, market_state: MarketState):
    """Live decision; without an active deployment a HOLD decision with an error is returned"""
    decision = await asyncio.to_thread(service.decide, portfolio_id, market_state)
    return decision.to_dict()


@app.post("/update/{portfolio_id}")
async def record_outcome(portfolio_id: str, request: OutcomeRequest):
    queued = service.record_outcome(
        portfolio_id,
        request.state,
        request.action,
        request.reward,
        request.next_state,
        request.done,
    )
    return {"portfolio_id": portfolio_id, "queued": queued}


@app.put("/toggle/{portfolio_id}")
async def toggle_deployment(portfolio_id: str, active: bool):
    return service.toggle(portfolio_id, active).to_dict()


@app.delete("/stop/{portfolio_id}")
async def stop_deployment(portfolio_id: str):
    deployment = service.stop(portfolio_id)
    return {"portfolio_id": portfolio_id, "stopped": deployment is not None}


# ============== Agent Management ==============

@app.get("/performance/{agent_id}")
async def get_performance(agent_id: str):
    return service.get_performance(agent_id).model_dump()


@app.get("/agents")
async def list_agents():
    """List all registered agents"""
    return service.list_agents()


@app.get("/agents/status")
async def get_system_status():
    return service.get_system_status()


@app.get("/agents/{agent_id}/checkpoints")
async def list_checkpoints(agent_id: str):
    return {"agent_id": agent_id, "checkpoints": service.list_checkpoints(agent_id)}


@app.post("/agents/{agent_id}/rollback")
async def rollback_agent(agent_id: str, request: RollbackRequest):
    performance = service.rollback_agent(agent_id, request.version)
    return {"agent_id": agent_id, "version": request.version, "performance": performance.model_dump()}


@app.delete("/agents/{agent_id}")
async def delete_agent(agent_id: str):
    """Delete an agent and its checkpoints"""
    service.delete_agent(agent_id)
    training_logs.pop(agent_id, None)
    return {"message": f"Agent {agent_id} deleted successfully"}


@app.get("/presets")
async def list_presets():
    """List available preset hyperparameter configurations"""
    return {
        name: config.model_dump()
        for name, config in PRESET_DQN_CONFIGS.items()
    }

