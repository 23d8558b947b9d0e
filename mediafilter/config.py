import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .assets import compile_glob
from .errors import ConfigurationError
from .policies import PolicyMode


ENV_PREFIX = "MEDIAFILTER_"

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def _flatten(value: object) -> object:
    # JSON lists and booleans become the comma / true-false strings used in
    # property files
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class TaskProperties:
    """
    Typed lookup over flat dotted task properties (``image.maxwidth`` etc).

    Lookup order: explicit overrides, then environment variables, then file
    values. ``image.maxwidth`` is overridden by ``MEDIAFILTER_IMAGE_MAXWIDTH``.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, object]] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._values: Dict[str, object] = {
            key: _flatten(value) for key, value in (values or {}).items()
        }
        self._environ = os.environ if environ is None else environ
        self._overrides: Dict[str, str] = dict(overrides or {})

    def with_overrides(self, overrides: Mapping[str, str]) -> "TaskProperties":
        merged = {**self._overrides, **overrides}
        return TaskProperties(self._values, self._environ, merged)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if key in self._overrides:
            return self._overrides[key]
        env_key = ENV_PREFIX + key.replace(".", "_").upper()
        if env_key in self._environ:
            return self._environ[env_key]
        value = self._values.get(key)
        if value is None:
            return default
        return str(value)

    def get_int(self, key: str, default: int = 0) -> int:
        raw = self.get(key)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw.strip())
        except ValueError as e:
            raise ConfigurationError(f"Property '{key}' is not an integer: {raw!r}") from e

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get(key)
        if raw is None:
            return default
        value = raw.strip().lower()
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ConfigurationError(f"Property '{key}' is not a boolean: {raw!r}")

    def get_list(self, key: str) -> List[str]:
        raw = self.get(key)
        if not raw:
            return []
        return [part.strip() for part in raw.split(",") if part.strip()]

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None or value.strip() == "":
            raise ConfigurationError(f"Missing required property '{key}'")
        return value


def load_properties(path: Path) -> TaskProperties:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read task properties from {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object of properties")
    return TaskProperties(data)


@dataclass(frozen=True)
class DerivativeSpec:
    source_bundle: str
    source_pattern: "re.Pattern[str]"
    target_bundle: str
    target_format: str
    min_size: int = 0
    source_formats: Tuple[str, ...] = ()
    force: bool = False
    target_template: Optional[str] = None
    target_description: Optional[str] = None
    policy: PolicyMode = PolicyMode.UNRECOGNIZED
    policy_name: Optional[str] = None
    parsers: Tuple[str, ...] = ()

    @classmethod
    def from_properties(cls, props: TaskProperties) -> "DerivativeSpec":
        bundle, _, glob = props.require("source.selector").partition("/")
        target_bundle, _, template = props.require("target.spec").partition("/")
        return cls(
            source_bundle=bundle,
            source_pattern=compile_glob(glob or None),
            target_bundle=target_bundle,
            target_format=props.require("target.format"),
            min_size=props.get_int("source.minsize", 0),
            source_formats=tuple(props.get_list("source.formats")),
            force=props.get_bool("filter.force", False),
            target_template=template or None,
            target_description=props.get("target.description"),
            policy=PolicyMode.parse(props.get("target.policy")),
            policy_name=props.get("target.policy"),
            parsers=tuple(props.get_list("filter.parsers")),
        )
