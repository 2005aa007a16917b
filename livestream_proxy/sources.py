import json
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import TypeAdapter

from livestream_proxy.configs import LiveSourceConfig, settings

logger = logging.getLogger(__name__)


class SourceResolver(ABC):
    """Read-only view of the live source table owned by the surrounding application."""

    @abstractmethod
    async def get_source(self, key: Optional[str]) -> Optional[LiveSourceConfig]:
        """Return the live source configured under `key`, or None when there is none."""
        pass

    @abstractmethod
    async def list_sources(self) -> List[LiveSourceConfig]:
        """Return every configured live source."""
        pass


class StaticSourceResolver(SourceResolver):
    """Source resolver backed by an in-memory table."""

    def __init__(self, sources: Iterable[LiveSourceConfig]):
        self._sources: Dict[str, LiveSourceConfig] = {}
        for source in sources:
            if source.key in self._sources:
                logger.warning(f"Duplicate live source key '{source.key}', keeping the first definition")
                continue
            self._sources[source.key] = source

    async def get_source(self, key: Optional[str]) -> Optional[LiveSourceConfig]:
        if not key:
            return None
        return self._sources.get(key)

    async def list_sources(self) -> List[LiveSourceConfig]:
        return list(self._sources.values())


_source_list_adapter = TypeAdapter(List[LiveSourceConfig])


def load_sources_file(path: str) -> List[LiveSourceConfig]:
    """
    Load a live source table from a JSON file.

    Two shapes are accepted: a plain list of source objects, or a config file with a ``lives`` mapping
    of key -> source object, in which case the mapping key is used as the source key.

    Args:
        path (str): Path of the JSON file.

    Returns:
        List[LiveSourceConfig]: The parsed sources.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = [{"key": key, **value} for key, value in (data.get("lives") or {}).items()]
    return _source_list_adapter.validate_python(data)


@lru_cache
def get_source_resolver() -> SourceResolver:
    """
    FastAPI dependency providing the process-wide source resolver built from settings.

    The resolver is built once per process, so edits to ``live_sources_file`` take effect after a restart.

    Override it with ``app.dependency_overrides[get_source_resolver]`` to plug in another backend.
    """
    sources = list(settings.live_sources)
    if settings.live_sources_file:
        sources.extend(load_sources_file(settings.live_sources_file))
    logger.info(f"Loaded {len(sources)} live sources")
    return StaticSourceResolver(sources)
