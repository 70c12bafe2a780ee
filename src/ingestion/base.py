"""
Base classes for Ingestion
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Type, TypeVar

from pydantic import BaseModel, ValidationError

from core.entities import SourceType
from core.errors import FetchTransportError
from core.schemas import RawItem

C = TypeVar("C", bound=BaseModel)


class Fetcher(ABC):
    """
    Base interface for all fetch strategies, one per SourceType.
    """

    source_type: SourceType

    @abstractmethod
    async def fetch(self, config: Dict[str, Any]) -> List[RawItem]:
        """
        Fetch candidate items described by a Source's config document.

        Raises:
            FetchTransportError, FetchRateLimited, FetchTimeout
        """
        raise NotImplementedError

    @staticmethod
    def parse_config(model: Type[C], config: Dict[str, Any]) -> C:
        """
        Typed view over the opaque config document. A malformed config is
        reported as a transport error so it counts toward the source's
        error threshold.
        """
        try:
            return model.model_validate(config)
        except ValidationError as e:
            raise FetchTransportError(f"Invalid {model.__name__}: {e.errors()[0]['msg']}") from e
