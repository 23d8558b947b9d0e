"""
Content model and storage collaborators.

Items own bundles, bundles own bitstreams. Access rules are kept by the
repository, keyed by object id, the way an authorization table would be.
``MemoryRepository`` keeps everything in process; ``FilesystemRepository``
loads an item from a directory and writes derivatives back next to it.
"""

import io
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Protocol, Tuple, Union
from uuid import uuid4

from .errors import CollaboratorFailure


logger = logging.getLogger(__name__)

ANONYMOUS = "Anonymous"


class Action(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    ADD = "ADD"
    REMOVE = "REMOVE"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class AccessRule:
    action: Action
    group: str = ANONYMOUS


@dataclass(frozen=True)
class BitstreamFormat:
    short_description: str
    mime_type: str
    extensions: Tuple[str, ...] = ()


UNKNOWN_FORMAT = BitstreamFormat("Unknown", "application/octet-stream")

DEFAULT_FORMATS: Tuple[BitstreamFormat, ...] = (
    BitstreamFormat("TIFF", "image/tiff", ("tif", "tiff")),
    BitstreamFormat("JPEG", "image/jpeg", ("jpg", "jpeg")),
    BitstreamFormat("PNG", "image/png", ("png",)),
    BitstreamFormat("GIF", "image/gif", ("gif",)),
    BitstreamFormat("BMP", "image/bmp", ("bmp",)),
    BitstreamFormat("WebP", "image/webp", ("webp",)),
    BitstreamFormat("Adobe PDF", "application/pdf", ("pdf",)),
    BitstreamFormat("Text", "text/plain", ("txt",)),
    BitstreamFormat("HTML", "text/html", ("html", "htm")),
    BitstreamFormat(
        "Microsoft Word XML",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        ("docx",),
    ),
)


def _new_id() -> str:
    return uuid4().hex


@dataclass(eq=False)
class Collection:
    name: str
    id: str = field(default_factory=_new_id)


@dataclass(eq=False)
class Bitstream:
    name: str
    format: BitstreamFormat = UNKNOWN_FORMAT
    data: bytes = b""
    description: Optional[str] = None
    source: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def mime_type(self) -> str:
        return self.format.mime_type

    @property
    def short_format(self) -> str:
        return self.format.short_description

    @property
    def extensions(self) -> Tuple[str, ...]:
        return self.format.extensions


@dataclass(eq=False)
class Bundle:
    name: str
    bitstreams: List[Bitstream] = field(default_factory=list)
    id: str = field(default_factory=_new_id)


@dataclass(eq=False)
class Item:
    handle: Optional[str] = None
    bundles: List[Bundle] = field(default_factory=list)
    owning_collection: Optional[Collection] = None
    id: str = field(default_factory=_new_id)

    def get_bundles(self, name: str) -> List[Bundle]:
        return [b for b in self.bundles if b.name == name]


Resource = Union[Collection, Item, Bundle, Bitstream]


class Repository(Protocol):
    """
    Storage and authorization operations the pipeline depends on.

    Every method may raise ``CollaboratorFailure``; the pipeline never
    retries.
    """

    def find_format(self, short_description: str) -> Optional[BitstreamFormat]: ...

    def retrieve(self, bitstream: Bitstream) -> BinaryIO: ...

    def create_bundle(self, item: Item, name: str) -> Bundle: ...

    def store_bitstream(self, chunks: Iterable[bytes]) -> Bitstream: ...

    def add_bitstream(self, item: Item, bundle: Bundle, bitstream: Bitstream) -> None: ...

    def remove_bitstream(self, item: Item, bundle: Bundle, bitstream: Bitstream) -> None: ...

    def get_policies(self, obj: Resource) -> List[AccessRule]: ...

    def add_policy(self, obj: Resource, rule: AccessRule) -> None: ...

    def remove_all_policies(self, obj: Resource) -> None: ...

    def remove_policies_by_action(self, obj: Resource, action: Action) -> None: ...

    def inherit_policies(self, donor: Resource, target: Resource) -> None: ...


class MemoryRepository:
    """In-process repository; the reference implementation of ``Repository``."""

    def __init__(self, formats: Iterable[BitstreamFormat] = DEFAULT_FORMATS) -> None:
        self._formats: Dict[str, BitstreamFormat] = {
            f.short_description: f for f in formats
        }
        self._policies: Dict[str, List[AccessRule]] = {}

    def find_format(self, short_description: str) -> Optional[BitstreamFormat]:
        return self._formats.get(short_description)

    def format_for_extension(self, extension: str) -> BitstreamFormat:
        ext = extension.lower().lstrip(".")
        for fmt in self._formats.values():
            if ext in fmt.extensions:
                return fmt
        return UNKNOWN_FORMAT

    def retrieve(self, bitstream: Bitstream) -> BinaryIO:
        return io.BytesIO(bitstream.data)

    def create_bundle(self, item: Item, name: str) -> Bundle:
        bundle = Bundle(name=name)
        item.bundles.append(bundle)
        return bundle

    def store_bitstream(self, chunks: Iterable[bytes]) -> Bitstream:
        # Drain the producer completely before a Bitstream exists at all.
        buf = io.BytesIO()
        for chunk in chunks:
            buf.write(chunk)
        return Bitstream(name="", data=buf.getvalue())

    def add_bitstream(self, item: Item, bundle: Bundle, bitstream: Bitstream) -> None:
        bundle.bitstreams.append(bitstream)

    def remove_bitstream(self, item: Item, bundle: Bundle, bitstream: Bitstream) -> None:
        try:
            bundle.bitstreams.remove(bitstream)
        except ValueError as e:
            raise CollaboratorFailure(
                f"Bitstream '{bitstream.name}' is not in bundle '{bundle.name}'"
            ) from e
        self._policies.pop(bitstream.id, None)

    def get_policies(self, obj: Resource) -> List[AccessRule]:
        return list(self._policies.get(obj.id, []))

    def add_policy(self, obj: Resource, rule: AccessRule) -> None:
        self._policies.setdefault(obj.id, []).append(rule)

    def remove_all_policies(self, obj: Resource) -> None:
        self._policies[obj.id] = []

    def remove_policies_by_action(self, obj: Resource, action: Action) -> None:
        self._policies[obj.id] = [
            rule for rule in self._policies.get(obj.id, []) if rule.action != action
        ]

    def inherit_policies(self, donor: Resource, target: Resource) -> None:
        for rule in self.get_policies(donor):
            self.add_policy(target, rule)


class FilesystemRepository(MemoryRepository):
    """
    Directory-backed repository used by the command line runner.

    Layout of an item directory:
    - ``item.json``: optional ``{"handle": ..., "collection": ...}``
    - one sub-directory per bundle, one file per bitstream
    - ``.policies.json``: access rules keyed by ``item``, ``collection``,
      ``<bundle>`` or ``<bundle>/<name>``
    """

    POLICY_FILE = ".policies.json"

    def __init__(self, formats: Iterable[BitstreamFormat] = DEFAULT_FORMATS) -> None:
        super().__init__(formats)
        self._roots: Dict[str, Path] = {}

    def load_item(self, path: Path) -> Item:
        try:
            meta = {}
            meta_path = path / "item.json"
            if meta_path.exists():
                with meta_path.open("r", encoding="utf-8") as f:
                    meta = json.load(f)

            collection = None
            if meta.get("collection"):
                collection = Collection(name=str(meta["collection"]))
            item = Item(handle=meta.get("handle"), owning_collection=collection)

            for bundle_dir in sorted(p for p in path.iterdir() if p.is_dir()):
                bundle = Bundle(name=bundle_dir.name)
                for file_path in sorted(p for p in bundle_dir.iterdir() if p.is_file()):
                    bundle.bitstreams.append(
                        Bitstream(
                            name=file_path.name,
                            format=self.format_for_extension(file_path.suffix),
                            data=file_path.read_bytes(),
                        )
                    )
                item.bundles.append(bundle)

            policy_path = path / self.POLICY_FILE
            if policy_path.exists():
                with policy_path.open("r", encoding="utf-8") as f:
                    self._load_policies(item, json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise CollaboratorFailure(f"Cannot load item from {path}: {e}") from e

        self._roots[item.id] = path
        return item

    def create_bundle(self, item: Item, name: str) -> Bundle:
        bundle = super().create_bundle(item, name)
        try:
            (self._root(item) / name).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CollaboratorFailure(f"Cannot create bundle '{name}': {e}") from e
        return bundle

    def add_bitstream(self, item: Item, bundle: Bundle, bitstream: Bitstream) -> None:
        try:
            target = self._root(item) / bundle.name / bitstream.name
            target.parent.mkdir(parents=True, exist_ok=True)
            _write_atomic(target, bitstream.data)
        except OSError as e:
            raise CollaboratorFailure(f"Cannot write '{bitstream.name}': {e}") from e
        super().add_bitstream(item, bundle, bitstream)
        self._save_policies(item)

    def remove_bitstream(self, item: Item, bundle: Bundle, bitstream: Bitstream) -> None:
        super().remove_bitstream(item, bundle, bitstream)
        # A replacement with the same name owns the file on disk now.
        if not any(bs.name == bitstream.name for bs in bundle.bitstreams):
            try:
                (self._root(item) / bundle.name / bitstream.name).unlink(missing_ok=True)
            except OSError as e:
                raise CollaboratorFailure(f"Cannot remove '{bitstream.name}': {e}") from e
        self._save_policies(item)

    def _root(self, item: Item) -> Path:
        try:
            return self._roots[item.id]
        except KeyError:
            raise CollaboratorFailure(f"Item {item.id} was not loaded from disk") from None

    def _resources(self, item: Item) -> Dict[str, Resource]:
        resources: Dict[str, Resource] = {"item": item}
        if item.owning_collection is not None:
            resources["collection"] = item.owning_collection
        for bundle in item.bundles:
            resources[bundle.name] = bundle
            for bs in bundle.bitstreams:
                resources[f"{bundle.name}/{bs.name}"] = bs
        return resources

    def _load_policies(self, item: Item, data: Dict) -> None:
        resources = self._resources(item)
        for key, rules in data.items():
            obj = resources.get(key)
            if obj is None:
                logger.warning("Ignoring policies for unknown resource '%s'", key)
                continue
            for rule in rules:
                self.add_policy(
                    obj,
                    AccessRule(Action(rule["action"]), rule.get("group", ANONYMOUS)),
                )

    def _save_policies(self, item: Item) -> None:
        data = {
            key: [{"action": r.action.value, "group": r.group} for r in self.get_policies(obj)]
            for key, obj in self._resources(item).items()
        }
        try:
            with (self._root(item) / self.POLICY_FILE).open("w", encoding="utf-8") as f:
                json.dump({k: v for k, v in data.items() if v}, f, indent=2)
        except OSError as e:
            raise CollaboratorFailure(f"Cannot write access rules: {e}") from e


def _write_atomic(target: Path, data: bytes) -> None:
    """Replace ``target`` with ``data``; readers see the old file or the new one."""
    tmp = tempfile.NamedTemporaryFile(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, target)
    finally:
        if os.path.exists(tmp.name):
            os.unlink(tmp.name)
