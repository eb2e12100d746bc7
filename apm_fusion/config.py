"""Configuration for the APM fusion engine.

Values are read from environment variables, optionally loaded from a
``.env`` file in the working directory.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_TOPOLOGY_INDEX = "otel-apm-service-map"
DEFAULT_TRAILING_WINDOW_SECONDS = 300

WEIGHTING_UNWEIGHTED = "unweighted"
WEIGHTING_CALL_COUNT = "call_count"
_WEIGHTINGS = (WEIGHTING_UNWEIGHTED, WEIGHTING_CALL_COUNT)


@dataclass
class FusionConfig:
    """Runtime settings for clients, the coordinator and the aggregator."""

    prometheus_url: str = "http://localhost:9090"
    opensearch_url: str = "http://localhost:9200"
    topology_index: str = DEFAULT_TOPOLOGY_INDEX
    # Instant-query approximation: time-series kinds always look this far back.
    trailing_window_seconds: int = DEFAULT_TRAILING_WINDOW_SECONDS
    query_step: str = "60s"
    max_concurrency: int = 8
    http_timeout_seconds: float = 30.0
    dependency_weighting: str = WEIGHTING_UNWEIGHTED

    def __post_init__(self) -> None:
        if self.trailing_window_seconds <= 0:
            raise ValueError("trailing_window_seconds must be positive")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.dependency_weighting not in _WEIGHTINGS:
            raise ValueError(
                f"dependency_weighting must be one of {_WEIGHTINGS}, "
                f"got {self.dependency_weighting!r}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FusionConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls) -> "FusionConfig":
        """Build a config from ``APM_*`` environment variables."""
        return cls(
            prometheus_url=os.getenv("APM_PROMETHEUS_URL", "http://localhost:9090"),
            opensearch_url=os.getenv("APM_OPENSEARCH_URL", "http://localhost:9200"),
            topology_index=os.getenv("APM_TOPOLOGY_INDEX", DEFAULT_TOPOLOGY_INDEX),
            trailing_window_seconds=int(
                os.getenv(
                    "APM_TRAILING_WINDOW_SECONDS", str(DEFAULT_TRAILING_WINDOW_SECONDS)
                )
            ),
            query_step=os.getenv("APM_QUERY_STEP", "60s"),
            max_concurrency=int(os.getenv("APM_FUSION_MAX_CONCURRENCY", "8")),
            http_timeout_seconds=float(os.getenv("APM_HTTP_TIMEOUT_SECONDS", "30")),
            dependency_weighting=os.getenv(
                "APM_DEPENDENCY_WEIGHTING", WEIGHTING_UNWEIGHTED
            ).lower(),
        )


_fusion_config: FusionConfig | None = None


def get_fusion_config() -> FusionConfig:
    """Get the singleton FusionConfig instance."""
    global _fusion_config
    if _fusion_config is None:
        load_dotenv()
        _fusion_config = FusionConfig.from_env()
        logger.debug(f"Loaded fusion config: {_fusion_config.to_dict()}")
    return _fusion_config


def reset_fusion_config() -> None:
    """Drop the cached config so the next call re-reads the environment."""
    global _fusion_config
    _fusion_config = None
