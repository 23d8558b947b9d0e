import logging
import re
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .config import DerivativeSpec
    from .naming import DerivativeNamer
    from .storage import Bitstream, Item


logger = logging.getLogger(__name__)


def compile_glob(glob: Optional[str]) -> "re.Pattern[str]":
    """
    Compile a filename glob into an anchored, case-sensitive pattern.

    ``*`` matches any run of characters, ``?`` exactly one; everything else
    is literal. A missing glob selects every name.
    """
    parts = ["^"]
    for ch in glob if glob is not None else "*":
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    parts.append(r"\Z")
    return re.compile("".join(parts), re.DOTALL)


class EligibilitySelector:
    """
    Decide whether a bitstream should get a derivative.

    Checks run in a fixed order and stop at the first failure:
    minimum size, name pattern, existing derivative (unless forced),
    allowed formats, and finally the filter's own capability check.
    """

    def __init__(
        self,
        spec: "DerivativeSpec",
        namer: "DerivativeNamer",
        can_filter: Callable[["Item", "Bitstream"], bool],
    ) -> None:
        self.spec = spec
        self.namer = namer
        self.can_filter = can_filter

    def rejection(self, item: "Item", bitstream: "Bitstream") -> Optional[str]:
        """Return why ``bitstream`` is ineligible, or None when it is eligible."""
        spec = self.spec
        if bitstream.size < spec.min_size:
            return f"size: {bitstream.size} below minimum: {spec.min_size}"
        if not spec.source_pattern.match(bitstream.name):
            return f"does not match selector: {spec.source_pattern.pattern}"
        if not spec.force and self.namer.existing_target(item, bitstream) is not None:
            return "target already exists"
        if spec.source_formats and bitstream.short_format not in spec.source_formats:
            return f"format: {bitstream.short_format} not listed"
        if not self.can_filter(item, bitstream):
            return f"format: {bitstream.mime_type} not supported"
        return None

    def is_eligible(self, item: "Item", bitstream: "Bitstream") -> bool:
        reason = self.rejection(item, bitstream)
        if reason is not None:
            logger.debug("Bitstream: '%s' %s", bitstream.name, reason)
            return False
        return True
