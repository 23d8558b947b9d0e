import io

import pytest
from PIL import Image

from mediafilter.core import (
    CurationStatus,
    extract_text_task,
    run_batch,
    scale_image_task,
)
from mediafilter.errors import CollaboratorFailure, ConfigurationError
from mediafilter.storage import AccessRule, Action, Bundle, Item, MemoryRepository
from tests.helpers.media import docx_with_compression, image_bytes, make_bitstream, pdf_bytes

pytestmark = [pytest.mark.pipeline]


class RecordingRepository(MemoryRepository):
    def __init__(self, fail_removal=False):
        super().__init__()
        self.calls = []
        self.fail_removal = fail_removal

    def store_bitstream(self, chunks):
        bitstream = super().store_bitstream(chunks)
        self.calls.append("store")
        return bitstream

    def remove_all_policies(self, obj):
        self.calls.append("policies")
        super().remove_all_policies(obj)

    def add_bitstream(self, item, bundle, bitstream):
        self.calls.append("add")
        super().add_bitstream(item, bundle, bitstream)

    def remove_bitstream(self, item, bundle, bitstream):
        self.calls.append("remove")
        if self.fail_removal:
            raise CollaboratorFailure("storage went away")
        super().remove_bitstream(item, bundle, bitstream)


def _add(item, name, short_format, data):
    bitstream = make_bitstream(name, short_format, data)
    item.bundles[0].bitstreams.append(bitstream)
    return bitstream


def _thumbnails(item):
    return [bs for bundle in item.get_bundles("THUMBNAIL") for bs in bundle.bitstreams]


def test_end_to_end_tiff_to_jpeg(repo, item, make_props):
    source = _add(item, "fig1.tif", "TIFF", image_bytes((5000, 3000), fmt="TIFF"))
    repo.add_policy(source, AccessRule(Action.READ, "Staff"))
    repo.add_policy(source, AccessRule(Action.WRITE, "Editors"))
    props = make_props(
        {"source.formats": "TIFF", "source.minsize": "0", "target.policy": "donor-bitstream"}
    )

    result = scale_image_task(props, repo).perform(item)

    assert result.status is CurationStatus.SUCCESS
    assert result.produced == {"fig1.tif": True}
    [derivative] = _thumbnails(item)
    assert derivative.name == "fig1.tif.jpg"
    assert derivative.short_format == "JPEG"
    assert derivative.description == "Derivative"
    assert derivative.source.startswith("Written by curation task scaleimage on ")
    width, height = Image.open(io.BytesIO(derivative.data)).size
    assert width <= 1200 and height <= 1200
    assert repo.get_policies(derivative) == repo.get_policies(source)


def test_second_run_finds_nothing_to_do(repo, item, make_props):
    _add(item, "fig1.png", "PNG", image_bytes())
    pipeline = scale_image_task(make_props(), repo)

    assert pipeline.perform(item).status is CurationStatus.SUCCESS
    second = pipeline.perform(item)

    assert second.status is CurationStatus.SKIP
    assert second.produced == {}
    assert len(_thumbnails(item)) == 1


def test_force_replaces_after_new_derivative_is_linked(item, make_props):
    repo = RecordingRepository()
    _add(item, "fig1.png", "PNG", image_bytes())
    scale_image_task(make_props(), repo).perform(item)
    [old] = _thumbnails(item)
    repo.calls.clear()

    result = scale_image_task(make_props({"filter.force": "true"}), repo).perform(item)

    assert result.status is CurationStatus.SUCCESS
    [new] = _thumbnails(item)
    assert new is not old and new.name == old.name
    assert repo.calls == ["store", "policies", "add", "remove"]


def test_failed_removal_leaves_both_derivatives(item, make_props):
    repo = RecordingRepository(fail_removal=True)
    _add(item, "fig1.png", "PNG", image_bytes())
    scale_image_task(make_props(), repo).perform(item)
    pipeline = scale_image_task(make_props({"filter.force": "true"}), repo)

    with pytest.raises(CollaboratorFailure):
        pipeline.perform(item)
    assert [bs.name for bs in _thumbnails(item)] == ["fig1.png.jpg", "fig1.png.jpg"]

    [result] = run_batch(pipeline, [item])
    assert result.status is CurationStatus.ERROR


def test_decode_failure_fails_item_but_not_other_assets(repo, item, make_props):
    _add(item, "good.png", "PNG", image_bytes())
    _add(item, "broken.png", "PNG", b"\x89PNG but not really")

    result = scale_image_task(make_props(), repo).perform(item)

    assert result.status is CurationStatus.FAIL
    assert result.produced == {"good.png": True, "broken.png": False}
    assert [bs.name for bs in _thumbnails(item)] == ["good.png.jpg"]
    assert result.report[-1] == "Filtered item: 123456789/42: failed!"


def test_nothing_eligible_is_a_skip(repo, item, make_props):
    _add(item, "notes.txt", "Text", b"hello")
    result = scale_image_task(make_props(), repo).perform(item)
    assert result.status is CurationStatus.SKIP
    assert result.message == "Filtered item: 123456789/42"


def test_non_items_are_skipped(repo, make_props):
    result = scale_image_task(make_props(), repo).perform("a collection")
    assert result.status is CurationStatus.SKIP
    assert result.message == "Object skipped"


def test_workspace_item_message(repo, make_props):
    item = Item()
    result = scale_image_task(make_props(), repo).perform(item)
    assert result.message == f"Filtered item: workspace item: {item.id}"


def test_target_bundle_may_be_the_source_bundle(repo, item, make_props):
    _add(item, "fig1.png", "PNG", image_bytes())
    props = make_props({"target.spec": "ORIGINAL/thumb_$src.$ext"})

    result = scale_image_task(props, repo).perform(item)

    assert result.produced == {"fig1.png": True}
    assert [bs.name for bs in item.bundles[0].bitstreams] == ["fig1.png", "thumb_fig1.png.jpg"]


@pytest.mark.parametrize(
    "extra",
    [{"target.format": "Betamax"}, {"target.format": "Text"}, {"image.maxheight": None}],
)
def test_configuration_errors_surface_before_processing(repo, make_props, extra):
    with pytest.raises(ConfigurationError):
        scale_image_task(make_props(extra), repo)


@pytest.fixture
def text_props(make_props):
    return make_props(
        {"target.spec": "TEXT", "target.format": "Text", "target.policy": "open"}
    )


def test_extract_text_pipeline(repo, item, text_props):
    _add(item, "paper.pdf", "Adobe PDF", pdf_bytes("Hello PDF"))
    _add(item, "notes.txt", "Text", b"plain notes")
    _add(item, "figure.png", "PNG", image_bytes())

    result = extract_text_task(text_props, repo).perform(item)

    assert result.status is CurationStatus.SUCCESS
    assert result.produced == {"paper.pdf": True, "notes.txt": True}
    derivatives = {bs.name: bs for bs in item.get_bundles("TEXT")[0].bitstreams}
    assert "Hello PDF" in derivatives["paper.pdf.txt"].data.decode("utf-8")
    assert derivatives["notes.txt.txt"].data == b"plain notes"
    assert repo.get_policies(derivatives["paper.pdf.txt"]) == [AccessRule(Action.READ, "Anonymous")]


def test_failed_extraction_links_nothing(repo, item, text_props):
    _add(item, "broken.pdf", "Adobe PDF", b"%PDF-1.4 truncated")

    result = extract_text_task(text_props, repo).perform(item)

    assert result.status is CurationStatus.FAIL
    assert item.get_bundles("TEXT") == []


def test_corrupted_document_fails_only_its_item(repo, item, text_props):
    _add(item, "report.docx", "Microsoft Word XML", docx_with_compression(99, "Lost"))
    healthy = Item(handle="123456789/43", bundles=[Bundle(name="ORIGINAL")])
    _add(healthy, "notes.txt", "Text", b"plain notes")

    bad, good = run_batch(extract_text_task(text_props, repo), [item, healthy])

    assert bad.status is CurationStatus.FAIL
    assert bad.produced == {"report.docx": False}
    assert good.status is CurationStatus.SUCCESS
    assert healthy.get_bundles("TEXT")[0].bitstreams[0].data == b"plain notes"
