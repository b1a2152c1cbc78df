"""Retry and timeout policies for pipeline stages."""

import math
from dataclasses import dataclass
from typing import Optional

from vodflow.core.config import Settings, settings as default_settings
from vodflow.modules.pipeline.models import Stage

STATUS_POLICY = "status"


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


@dataclass
class StagePolicy:
    """Retry budget plus per-attempt wall-clock timeout."""
    retry: RetryConfig
    timeout: float


def build_policies(config: Optional[Settings] = None) -> dict[str, StagePolicy]:
    """Stage policies keyed by stage name, plus the status-update policy."""
    config = config or default_settings

    def stage_retry(stage: Stage) -> RetryConfig:
        prefix = stage.value.upper()

        def value(name: str):
            override = getattr(config, f"{prefix}_RETRY_{name}")
            return getattr(config, f"STAGE_RETRY_{name}") if override is None else override

        return RetryConfig(
            max_attempts=value("MAX_ATTEMPTS"),
            initial_delay=value("INITIAL_DELAY"),
            max_delay=value("MAX_DELAY"),
            backoff_multiplier=value("BACKOFF_MULTIPLIER"),
        )

    return {
        STATUS_POLICY: StagePolicy(
            retry=RetryConfig(
                max_attempts=config.STATUS_RETRY_MAX_ATTEMPTS,
                initial_delay=config.STATUS_RETRY_INITIAL_DELAY,
                max_delay=config.STATUS_RETRY_MAX_DELAY,
                backoff_multiplier=2.0,
            ),
            timeout=config.STATUS_TIMEOUT_SECONDS,
        ),
        Stage.DOWNLOAD.value: StagePolicy(stage_retry(Stage.DOWNLOAD), config.DOWNLOAD_TIMEOUT_SECONDS),
        Stage.ANALYZE.value: StagePolicy(stage_retry(Stage.ANALYZE), config.ANALYZE_TIMEOUT_SECONDS),
        Stage.TRANSCODE.value: StagePolicy(stage_retry(Stage.TRANSCODE), config.TRANSCODE_TIMEOUT_SECONDS),
        Stage.PUBLISH.value: StagePolicy(stage_retry(Stage.PUBLISH), config.PUBLISH_TIMEOUT_SECONDS),
        Stage.CLEANUP.value: StagePolicy(
            retry=RetryConfig(
                max_attempts=config.CLEANUP_RETRY_MAX_ATTEMPTS,
                initial_delay=config.CLEANUP_RETRY_INITIAL_DELAY,
                max_delay=config.CLEANUP_RETRY_MAX_DELAY,
                backoff_multiplier=config.CLEANUP_RETRY_BACKOFF_MULTIPLIER,
            ),
            timeout=config.CLEANUP_TIMEOUT_SECONDS,
        ),
    }
