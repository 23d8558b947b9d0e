import pytest

from mediafilter.config import TaskProperties
from mediafilter.storage import AccessRule, Action, Bundle, Collection, Item, MemoryRepository


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def item():
    """An item with an empty ORIGINAL bundle and an owning collection."""
    return Item(
        handle="123456789/42",
        bundles=[Bundle(name="ORIGINAL")],
        owning_collection=Collection(name="Theses"),
    )


@pytest.fixture
def make_props():
    """Build TaskProperties for an image task; ``None`` removes a property."""

    def _make(extra=None):
        values = {
            "source.selector": "ORIGINAL/*",
            "target.spec": "THUMBNAIL",
            "target.format": "JPEG",
            "target.description": "Derivative",
            "target.policy": "bitstream",
            "image.maxwidth": "1200",
            "image.maxheight": "1200",
        }
        values.update(extra or {})
        return TaskProperties({k: v for k, v in values.items() if v is not None}, environ={})

    return _make


@pytest.fixture
def read_rule():
    return AccessRule(Action.READ, "Anonymous")


@pytest.fixture
def admin_rule():
    return AccessRule(Action.ADMIN, "Administrators")
