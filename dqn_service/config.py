"""
Configuration for DQN Trading Service
"""
import os
import torch
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Service info
    service_name: str = "dqn-trading-agent-service"
    version: str = os.getenv("BUILD_VERSION", "1.0.0")
    commit: str = os.getenv("BUILD_COMMIT", "unknown")
    build_time: str = os.getenv("BUILD_TIME", "unknown")

    debug: bool = os.getenv("DEBUG", "false").lower() == "true"

    # Model storage
    checkpoint_dir: str = os.getenv("CHECKPOINT_DIR", "checkpoints")

    # Training defaults
    default_max_episodes: int = int(os.getenv("DEFAULT_MAX_EPISODES", "200"))
    default_max_steps_per_episode: int = int(os.getenv("DEFAULT_MAX_STEPS_PER_EPISODE", "1000"))
    default_evaluation_frequency: int = int(os.getenv("DEFAULT_EVALUATION_FREQUENCY", "20"))
    default_evaluation_episodes: int = int(os.getenv("DEFAULT_EVALUATION_EPISODES", "10"))

    # Simulator defaults
    default_initial_capital: float = float(os.getenv("DEFAULT_INITIAL_CAPITAL", "100000"))
    default_transaction_cost_rate: float = float(os.getenv("DEFAULT_TRANSACTION_COST_RATE", "0.001"))
    default_slippage_rate: float = float(os.getenv("DEFAULT_SLIPPAGE_RATE", "0.0005"))
    default_max_drawdown_fraction: float = float(os.getenv("DEFAULT_MAX_DRAWDOWN_FRACTION", "0.15"))
    default_position_limit_fraction: float = float(os.getenv("DEFAULT_POSITION_LIMIT_FRACTION", "0.3"))

    # Live serving
    outcome_queue_size: int = int(os.getenv("OUTCOME_QUEUE_SIZE", "1000"))

    # CUDA settings
    use_cuda: bool = os.getenv("USE_CUDA", "false").lower() == "true"

    # Backend URL for historical data
    backend_url: str = os.getenv("BACKEND_URL", "http://backend:3001")

    @property
    def device(self) -> str:
        """Get the compute device (CUDA if available and enabled)"""
        if self.use_cuda and torch.cuda.is_available():
            return "cuda"
        return "cpu"

    @property
    def device_info(self) -> dict:
        """Get device information"""
        info = {
            "device": self.device,
            "cuda_available": torch.cuda.is_available(),
            "cuda_enabled": self.use_cuda,
        }
        if torch.cuda.is_available():
            info["cuda_device_name"] = torch.cuda.get_device_name(0)
            info["cuda_memory_total"] = f"{torch.cuda.get_device_properties(0).total_memory / 1e9:.2f} GB"
            info["cuda_device_count"] = torch.cuda.device_count()
        return info

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
