from typing import Optional

from .storage import Bitstream, BitstreamFormat, Item

SOURCE_PLACEHOLDER = "$src"
EXTENSION_PLACEHOLDER = "$ext"


class DerivativeNamer:
    """
    Computes derivative names and finds derivatives that already exist.

    Without a template the name is ``<source name>.<first target extension>``;
    with one, ``$src`` and ``$ext`` are substituted.
    """

    def __init__(
        self,
        target_bundle: str,
        target_format: BitstreamFormat,
        template: Optional[str] = None,
    ) -> None:
        self.target_bundle = target_bundle
        self.target_format = target_format
        self.template = template
        self.extension = target_format.extensions[0] if target_format.extensions else ""

    def target_name(self, source_name: str) -> str:
        if self.template is None:
            return f"{source_name}.{self.extension}"
        return self.template.replace(SOURCE_PLACEHOLDER, source_name).replace(
            EXTENSION_PLACEHOLDER, self.extension
        )

    def existing_target(self, item: Item, source: Bitstream) -> Optional[Bitstream]:
        name = self.target_name(source.name)
        for bundle in item.get_bundles(self.target_bundle):
            for bs in bundle.bitstreams:
                if bs.name == name:
                    return bs
        return None
