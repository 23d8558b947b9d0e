import io
import logging
import math
from dataclasses import dataclass, field
from typing import BinaryIO, List, Literal, Optional, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from .config import TaskProperties
from .errors import ConfigurationError, DecodeError, EncodeError
from .storage import BitstreamFormat


logger = logging.getLogger(__name__)

Corner = Literal["tl", "tr", "bl", "br"]

FULL_CAPTION_MIN_WIDTH = 350
ABBREV_CAPTION_MIN_WIDTH = 190
LABEL_PADDING = 5
LABEL_BACKGROUND = (0, 0, 0)
LABEL_FOREGROUND = (255, 255, 255)
CANVAS_BACKGROUND = (0, 0, 0)

BOX_BLUR = ImageFilter.Kernel((3, 3), [1 / 9] * 9, scale=1)


@dataclass(frozen=True)
class BrandSettings:
    height: int = 0
    text: Optional[str] = None
    abbrev: Optional[str] = None
    font: Optional[str] = None
    font_point: int = 0

    @property
    def enabled(self) -> bool:
        return self.height > 0


@dataclass(frozen=True)
class ImageSettings:
    max_width: float
    max_height: float
    blur: bool = False
    hq_scale: bool = False
    brand: BrandSettings = field(default_factory=BrandSettings)

    @classmethod
    def from_properties(cls, props: TaskProperties) -> "ImageSettings":
        brand = BrandSettings(
            height=props.get_int("brand.height", 0),
            text=props.get("brand.text"),
            abbrev=props.get("brand.abbrev"),
            font=props.get("brand.font"),
            font_point=props.get_int("brand.fontpoint", 0),
        )
        if brand.height < 0:
            raise ConfigurationError("Property 'brand.height' must not be negative")
        if brand.enabled and brand.font_point <= 0:
            raise ConfigurationError(
                "Property 'brand.fontpoint' must be a positive integer when branding is enabled"
            )
        return cls(
            max_width=_positive_number(props, "image.maxwidth"),
            max_height=_positive_number(props, "image.maxheight"),
            blur=props.get_bool("image.blur", False),
            hq_scale=props.get_bool("image.hqscale", False),
            brand=brand,
        )


def _positive_number(props: TaskProperties, key: str) -> float:
    raw = props.require(key)
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Property '{key}' is not a number: {raw!r}") from e
    if not value > 0 or math.isinf(value):
        raise ConfigurationError(f"Property '{key}' must be a positive number: {raw!r}")
    return value


def encoder_for(target: BitstreamFormat) -> str:
    """Map a target format to the Pillow encoder that writes it."""
    Image.init()
    registered = Image.registered_extensions()
    for ext in target.extensions:
        fmt = registered.get("." + ext.lower())
        if fmt is not None and fmt in Image.SAVE:
            return fmt
    raise ConfigurationError(
        f"Target format '{target.short_description}' cannot be written as an image"
    )


def fit_dimensions(
    width: float, height: float, max_width: float, max_height: float
) -> Tuple[int, int]:
    """
    Shrink (never enlarge) an extent to fit inside ``max_width`` x ``max_height``.

    Width is fitted first; the height pass then works on the already reduced
    extent, so a wide image may be scaled twice.
    """
    w, h = float(width), float(height)
    if w > max_width:
        h = h * max_width / w
        w = max_width
    if h > max_height:
        w = w * max_height / h
        h = max_height
    return max(1, int(w)), max(1, int(h))


def brand_caption(width: int, text: Optional[str], abbrev: Optional[str]) -> Optional[str]:
    if width >= FULL_CAPTION_MIN_WIDTH:
        return text
    if width >= ABBREV_CAPTION_MIN_WIDTH:
        return abbrev
    return None


def brand_identifier(handle: Optional[str]) -> str:
    return "" if handle is None else f"hdl:{handle}"


def brand_labels(width: int, identifier: str, brand: BrandSettings) -> List[Tuple[Corner, str]]:
    """Labels placed on a brand strip of the given width, in drawing order."""
    labels: List[Tuple[Corner, str]] = []
    caption = brand_caption(width, brand.text, brand.abbrev)
    if caption:
        labels.append(("bl", caption))
    labels.append(("br", identifier))
    return labels


def draw_text_label(
    img: Image.Image,
    corner: Corner,
    font: ImageFont.ImageFont,
    text: str,
) -> Tuple[int, int, int, int]:
    """
    Draw ``text`` on a solid box anchored to one corner of ``img``.

    Returns the box as (x, y, width, height).
    """
    draw = ImageDraw.Draw(img)
    img_w, img_h = img.size

    box_w = int(math.ceil(draw.textlength(text, font=font))) + LABEL_PADDING * 2 + 1
    box_h = _line_height(font)

    if corner == "tl":
        bx, by = 0, 0
    elif corner == "tr":
        bx, by = img_w - box_w, 0
    elif corner == "bl":
        bx, by = 0, img_h - box_h
    elif corner == "br":
        bx, by = img_w - box_w, img_h - box_h
    else:
        raise ValueError(f"Unknown corner: {corner!r}")

    draw.rectangle([bx, by, bx + box_w - 1, by + box_h - 1], fill=LABEL_BACKGROUND)
    draw.text((bx + LABEL_PADDING, by), text, font=font, fill=LABEL_FOREGROUND)
    return bx, by, box_w, box_h


class RasterTransformer:
    """
    Scale one image into a derivative, optionally with a brand strip.

    Stages: decode, fit, optional box blur at source resolution, optional
    stepwise bicubic halving, composite onto the output canvas, optional
    brand strip underneath, encode.
    """

    def __init__(self, settings: ImageSettings, output_format: str) -> None:
        self.settings = settings
        self.output_format = output_format
        self.font: Optional[ImageFont.ImageFont] = None
        if settings.brand.enabled:
            self.font = _load_font(settings.brand.font, settings.brand.font_point)

    def transform(self, stream: BinaryIO, identifier: str = "") -> bytes:
        s = self.settings
        img = self.decode(stream)
        target_w, target_h = fit_dimensions(img.width, img.height, s.max_width, s.max_height)

        if s.blur:
            img = img.filter(BOX_BLUR)
        if s.hq_scale:
            img = downscale(img, target_w, target_h)

        canvas = self.composite(img, target_w, target_h)
        if s.brand.enabled:
            strip = self.render_brand_strip(target_w, identifier)
            canvas.paste(strip, (0, target_h))
        return self.encode(canvas)

    @staticmethod
    def decode(stream: BinaryIO) -> Image.Image:
        try:
            with Image.open(stream) as src:
                src.load()
                return src.convert("RGB")
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
            raise DecodeError(f"Cannot decode image: {e}") from e

    def composite(self, img: Image.Image, width: int, height: int) -> Image.Image:
        canvas = Image.new("RGB", (width, height + self.settings.brand.height), CANVAS_BACKGROUND)
        if img.size != (width, height):
            resample = Image.BICUBIC if self.settings.hq_scale else Image.BILINEAR
            img = img.resize((width, height), resample)
        canvas.paste(img, (0, 0))
        return canvas

    def render_brand_strip(self, width: int, identifier: str) -> Image.Image:
        brand = self.settings.brand
        strip = Image.new("RGB", (width, brand.height), LABEL_BACKGROUND)
        for corner, text in brand_labels(width, identifier, brand):
            draw_text_label(strip, corner, self.font, text)
        return strip

    def encode(self, canvas: Image.Image) -> bytes:
        buf = io.BytesIO()
        try:
            canvas.save(buf, format=self.output_format)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeError(f"Cannot encode {self.output_format}: {e}") from e
        return buf.getvalue()


def downscale(img: Image.Image, width: int, height: int) -> Image.Image:
    """Halve repeatedly with bicubic resampling until ``width`` is reached."""
    cur_w, cur_h = img.size
    while cur_w > width:
        cur_w = max(cur_w // 2, width)
        cur_h = max(cur_h // 2, height)
        img = img.resize((cur_w, cur_h), Image.BICUBIC)
    return img


def _line_height(font: ImageFont.ImageFont) -> int:
    if isinstance(font, ImageFont.FreeTypeFont):
        ascent, descent = font.getmetrics()
        return ascent + descent
    return font.getbbox("Ay")[3]


def _load_font(font_name: Optional[str], size: int) -> ImageFont.ImageFont:
    """
    Load a TrueType font by path or file name, falling back to common
    system fonts and finally Pillow's bundled default.
    """
    candidates: List[str] = []
    if font_name:
        candidates += [font_name, f"{font_name}.ttf"]
    candidates += [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
        "/System/Library/Fonts/Supplemental/Arial.ttf",
        "/Library/Fonts/Arial.ttf",
        "C:/Windows/Fonts/arial.ttf",
        "DejaVuSans.ttf",
    ]

    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue

    logger.warning("No TrueType font found for '%s'; using the default font", font_name)
    return ImageFont.load_default(size=size)
