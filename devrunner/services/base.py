"""
Service plumbing shared by the run pipeline.

Every service is built from a ServiceContext, so feature flags travel with
the object graph instead of being looked up from the environment.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from devrunner.config import Config
from devrunner.logging import get_logger, log_extra


@dataclass(frozen=True)
class ServiceContext:
    """Configuration plus an optional correlation id."""

    config: Config
    request_id: Optional[str] = None

    def with_overrides(self, **fields: Any) -> "ServiceContext":
        """Copy of this context with selected Config fields replaced."""
        return replace(self, config=self.config.model_copy(update=fields))


class Service:
    """Base class for pipeline services: holds the context, config and a logger."""

    def __init__(self, context: ServiceContext) -> None:
        self.context = context
        self.config = context.config
        self.logger = get_logger(f"devrunner.{type(self).__name__}")

    def log_extra(self, **fields: Any) -> Dict[str, Any]:
        fields.setdefault("request_id", self.context.request_id)
        return log_extra(**fields)
