from digitnet.config.settings import Settings
from digitnet.config.ensemble_config import (
    EnsembleConfig,
    LearningConfig,
    NetworkConfig,
    NodeConfig,
    ObserverWeightsConfig,
    PayoffConfig,
    load_ensemble_config,
)

__all__ = [
    "Settings",
    "EnsembleConfig",
    "LearningConfig",
    "NetworkConfig",
    "NodeConfig",
    "ObserverWeightsConfig",
    "PayoffConfig",
    "load_ensemble_config",
]
