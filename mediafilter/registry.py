import logging
from dataclasses import dataclass
from importlib.metadata import entry_points
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from PIL import Image

from .extractors import Extractor, builtin_extractors


logger = logging.getLogger(__name__)

EXTRACTOR_GROUP = "mediafilter.extractors"


def _normalize(media_type: str) -> str:
    return media_type.split(";", 1)[0].strip().lower()


def discover_extractors() -> List[Extractor]:
    """
    Collect every available text extractor.

    Built-in handlers come first; handlers published by installed
    distributions under the ``mediafilter.extractors`` entry-point group
    follow and replace a built-in of the same name.
    """
    found: Dict[str, Extractor] = {e.name: e for e in builtin_extractors()}
    for ep in entry_points(group=EXTRACTOR_GROUP):
        try:
            extractor = ep.load()()
        except (ImportError, AttributeError, TypeError) as e:
            logger.error("Could not load extractor entry point '%s': %s", ep.name, e)
            continue
        found[extractor.name or ep.name] = extractor
    return list(found.values())


class CapabilityRegistry:
    """Read-only map from media type to the extractor that handles it."""

    def __init__(self, mapping: Mapping[str, Extractor]) -> None:
        self._mapping = MappingProxyType(dict(mapping))

    @classmethod
    def build(
        cls,
        extractors: Iterable[Extractor],
        overrides: Sequence[str] = (),
    ) -> "CapabilityRegistry":
        extractors = list(extractors)
        mapping: Dict[str, Extractor] = {}
        for extractor in extractors:
            for media_type in extractor.supported_types():
                mapping[_normalize(media_type)] = extractor

        # configured handlers trump the defaults
        by_name = {e.name: e for e in extractors}
        for name in overrides:
            extractor = by_name.get(name)
            if extractor is None:
                logger.error("Could not find configured parser: %s", name)
                continue
            for media_type in extractor.supported_types():
                mapping[_normalize(media_type)] = extractor

        return cls(mapping)

    @property
    def media_types(self) -> FrozenSet[str]:
        return frozenset(self._mapping)

    def resolve(self, media_type: str) -> Optional[Extractor]:
        return self._mapping.get(_normalize(media_type))

    def supports(self, media_type: str) -> bool:
        return _normalize(media_type) in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)


@dataclass(frozen=True)
class RasterCapability:
    """Media types and file suffixes the installed Pillow build can decode."""

    mime_types: FrozenSet[str]
    extensions: FrozenSet[str]

    @classmethod
    def from_pillow(cls) -> "RasterCapability":
        Image.init()
        readable = set(Image.OPEN)
        mime_types = frozenset(
            mime.lower() for fmt, mime in Image.MIME.items() if fmt in readable
        )
        extensions = frozenset(
            ext.lstrip(".").lower()
            for ext, fmt in Image.registered_extensions().items()
            if fmt in readable
        )
        return cls(mime_types=mime_types, extensions=extensions)

    def supports(self, mime_type: str, extensions: Iterable[str] = ()) -> bool:
        if _normalize(mime_type) in self.mime_types:
            return True
        return any(ext.lower() in self.extensions for ext in extensions)
