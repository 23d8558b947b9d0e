import logging
from enum import Enum
from typing import Optional

from .storage import ANONYMOUS, AccessRule, Action, Bitstream, Bundle, Item, Repository


logger = logging.getLogger(__name__)


class PolicyMode(str, Enum):
    """Where a new derivative gets its access rules from."""

    BITSTREAM = "bitstream"
    BUNDLE = "bundle"
    ITEM = "item"
    COLLECTION = "collection"
    OPEN = "open"
    CLOSED = "closed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PolicyMode":
        name = (value or "").strip().lower()
        if name.startswith("donor-"):
            name = name[len("donor-"):]
        try:
            return cls(name)
        except ValueError:
            return cls.UNRECOGNIZED


class PolicyPropagator:
    """
    Assign access rules to a freshly stored derivative.

    The derivative's rule set is always cleared first, so reapplying a mode
    gives the same result.
    """

    def __init__(
        self,
        mode: PolicyMode,
        repository: Repository,
        mode_name: Optional[str] = None,
    ) -> None:
        self.mode = mode
        self.repository = repository
        self.mode_name = mode_name if mode_name is not None else mode.value

    def apply(self, target: Bitstream, source: Bitstream, bundle: Bundle, item: Item) -> None:
        repo = self.repository
        repo.remove_all_policies(target)

        donor = None
        if self.mode is PolicyMode.BITSTREAM:
            donor = source
        elif self.mode is PolicyMode.BUNDLE:
            donor = bundle
        elif self.mode is PolicyMode.ITEM:
            donor = item
        elif self.mode is PolicyMode.COLLECTION:
            donor = item.owning_collection
            if donor is None:
                logger.warning("Item %s has no owning collection; no rules inherited", item.id)
        elif self.mode is PolicyMode.OPEN:
            repo.add_policy(target, AccessRule(Action.READ, ANONYMOUS))
        elif self.mode is PolicyMode.CLOSED:
            # item rules as a basis, minus every read grant
            repo.inherit_policies(item, target)
            repo.remove_policies_by_action(target, Action.READ)
        else:
            logger.error("Unknown policy: '%s'", self.mode_name)

        if donor is not None:
            repo.inherit_policies(donor, target)
