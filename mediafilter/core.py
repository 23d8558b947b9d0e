import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import BinaryIO, Dict, Iterable, List, Optional, Sequence

from .assets import EligibilitySelector
from .config import DerivativeSpec, TaskProperties
from .errors import CollaboratorFailure, ConfigurationError, TransformError
from .extractors import Extractor
from .naming import DerivativeNamer
from .policies import PolicyPropagator
from .registry import CapabilityRegistry, RasterCapability, discover_extractors
from .render import ImageSettings, RasterTransformer, brand_identifier, encoder_for
from .storage import Bitstream, BitstreamFormat, Item, Repository


logger = logging.getLogger(__name__)


class CurationStatus(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"
    SKIP = "skip"
    ERROR = "error"


@dataclass
class TaskResult:
    status: CurationStatus
    message: str
    report: List[str] = field(default_factory=list)
    # source bitstream name -> derivative produced
    produced: Dict[str, bool] = field(default_factory=dict)


class DerivativeFilter(ABC):
    """The format-specific half of a pipeline: what can be filtered, and how."""

    @abstractmethod
    def can_filter(self, item: Item, bitstream: Bitstream) -> bool:
        ...

    @abstractmethod
    def transform(self, item: Item, bitstream: Bitstream, stream: BinaryIO) -> Iterable[bytes]:
        """Return the derivative's bytes as chunks; may be lazy."""


class ScaleImageFilter(DerivativeFilter):
    """Scaled (and optionally branded) image derivatives."""

    def __init__(
        self,
        settings: ImageSettings,
        target_format: BitstreamFormat,
        capability: Optional[RasterCapability] = None,
    ) -> None:
        self.transformer = RasterTransformer(settings, encoder_for(target_format))
        self.capability = capability or RasterCapability.from_pillow()

    def can_filter(self, item: Item, bitstream: Bitstream) -> bool:
        return self.capability.supports(bitstream.mime_type, bitstream.extensions)

    def transform(self, item: Item, bitstream: Bitstream, stream: BinaryIO) -> Iterable[bytes]:
        return [self.transformer.transform(stream, brand_identifier(item.handle))]


class ExtractTextFilter(DerivativeFilter):
    """Plain text derivatives, streamed out of the registered extractor."""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self.registry = registry

    def can_filter(self, item: Item, bitstream: Bitstream) -> bool:
        return self.registry.supports(bitstream.mime_type)

    def transform(self, item: Item, bitstream: Bitstream, stream: BinaryIO) -> Iterable[bytes]:
        extractor = self.registry.resolve(bitstream.mime_type)
        if extractor is None:
            raise TransformError(f"No extractor for {bitstream.mime_type}")
        return (chunk.encode("utf-8") for chunk in extractor.extract(stream))


def resolve_target_format(spec: DerivativeSpec, repository: Repository) -> BitstreamFormat:
    fmt = repository.find_format(spec.target_format)
    if fmt is None:
        raise ConfigurationError(f"Unknown target format: '{spec.target_format}'")
    if not fmt.extensions:
        raise ConfigurationError(f"Target format '{spec.target_format}' has no file extension")
    return fmt


class DerivativePipeline:
    """
    Creates derivatives for the eligible bitstreams of an item.

    For every bitstream in the source bundle:
    - check eligibility (size, name, existing derivative, format, capability)
    - transform the content with the configured filter
    - store the derivative, describe it, assign access rules
    - link it into the target bundle, then drop any derivative it replaces
    """

    def __init__(
        self,
        spec: DerivativeSpec,
        repository: Repository,
        derivative_filter: DerivativeFilter,
        task_id: str = "mediafilter",
    ) -> None:
        self.spec = spec
        self.repository = repository
        self.filter = derivative_filter
        self.task_id = task_id
        self.namer = DerivativeNamer(
            spec.target_bundle, resolve_target_format(spec, repository), spec.target_template
        )
        self.selector = EligibilitySelector(spec, self.namer, derivative_filter.can_filter)
        self.policies = PolicyPropagator(spec.policy, repository, spec.policy_name)

    def perform(self, obj: object) -> TaskResult:
        if not isinstance(obj, Item):
            return TaskResult(CurationStatus.SKIP, "Object skipped")

        item = obj
        eligible = filtered = 0
        report: List[str] = []
        produced: Dict[str, bool] = {}

        for bundle in item.get_bundles(self.spec.source_bundle):
            # the target bundle may be the source bundle
            for bitstream in list(bundle.bitstreams):
                if not self.selector.is_eligible(item, bitstream):
                    continue
                eligible += 1
                ok = self.filter_bitstream(item, bitstream)
                produced[bitstream.name] = ok
                if ok:
                    filtered += 1
                    report.append(
                        f"Bitstream '{bitstream.name}': created "
                        f"'{self.namer.target_name(bitstream.name)}'"
                    )
                else:
                    report.append(f"Bitstream '{bitstream.name}': not filtered")

        item_id = item.handle if item.handle is not None else f"workspace item: {item.id}"
        msg = f"Filtered item: {item_id}"
        if eligible == 0:
            status = CurationStatus.SKIP
        elif filtered == eligible:
            status = CurationStatus.SUCCESS
        else:
            status = CurationStatus.FAIL
            report.append(msg + ": failed!")
        return TaskResult(status, msg, report, produced)

    def filter_bitstream(self, item: Item, bitstream: Bitstream) -> bool:
        stream = self.repository.retrieve(bitstream)
        try:
            chunks = self.filter.transform(item, bitstream, stream)
            self.create_derivative(item, bitstream, chunks)
        except TransformError as e:
            logger.warning("Bitstream '%s' not filtered: %s", bitstream.name, e)
            return False
        finally:
            stream.close()
        return True

    def create_derivative(self, item: Item, source: Bitstream, chunks: Iterable[bytes]) -> Bitstream:
        repo = self.repository
        existing = self.namer.existing_target(item, source)

        target = repo.store_bitstream(chunks)
        target.name = self.namer.target_name(source.name)
        target.format = self.namer.target_format
        target.description = self.spec.target_description
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        target.source = f"Written by curation task {self.task_id} on {now} (GMT)."

        bundles = item.get_bundles(self.spec.target_bundle)
        bundle = bundles[0] if bundles else repo.create_bundle(item, self.spec.target_bundle)

        self.policies.apply(target, source, bundle, item)
        repo.add_bitstream(item, bundle, target)
        logger.info("Created derivative '%s' from '%s'", target.name, source.name)

        # the replacement is in place before the old one goes
        if existing is not None:
            for candidate in item.get_bundles(self.spec.target_bundle):
                if any(bs is existing for bs in candidate.bitstreams):
                    repo.remove_bitstream(item, candidate, existing)
                    break
        return target


def run_batch(pipeline: DerivativePipeline, objects: Iterable[object]) -> List[TaskResult]:
    """Run ``pipeline`` over several objects; a storage failure fails only its object."""
    results: List[TaskResult] = []
    for obj in objects:
        try:
            results.append(pipeline.perform(obj))
        except CollaboratorFailure as e:
            logger.error("Curation failed: %s", e)
            results.append(TaskResult(CurationStatus.ERROR, f"Error: {e}"))
    return results


def scale_image_task(
    props: TaskProperties,
    repository: Repository,
    task_id: str = "scaleimage",
) -> DerivativePipeline:
    spec = DerivativeSpec.from_properties(props)
    settings = ImageSettings.from_properties(props)
    image_filter = ScaleImageFilter(settings, resolve_target_format(spec, repository))
    return DerivativePipeline(spec, repository, image_filter, task_id)


def extract_text_task(
    props: TaskProperties,
    repository: Repository,
    extractors: Optional[Sequence[Extractor]] = None,
    task_id: str = "extracttext",
) -> DerivativePipeline:
    spec = DerivativeSpec.from_properties(props)
    registry = CapabilityRegistry.build(
        extractors if extractors is not None else discover_extractors(),
        spec.parsers,
    )
    return DerivativePipeline(spec, repository, ExtractTextFilter(registry), task_id)


TASKS = {
    "scale": scale_image_task,
    "extract": extract_text_task,
}
