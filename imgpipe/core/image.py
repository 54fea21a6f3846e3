"""
Immutable image values and the Pillow-backed decoder/encoder.

An Image wraps a read-only ``(H, W, C)`` uint8 array. Row 0 of the array is
the top of the picture; geometric operations work in unit/bottom-left
coordinates and translate to rows only at the array boundary.
"""

from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, Union

import numpy as np
from PIL import ExifTags, Image as PILImage, ImageOps, UnidentifiedImageError
from PIL.TiffImagePlugin import IFDRational

from .errors import DecodeFailed, EncodeFailed
from .geometry import Rect
from ..utils.logging import get_logger, image_identifier

logger = get_logger(__name__)

MetadataValue = Union[int, float, str, List['MetadataValue'], Dict[str, 'MetadataValue']]

# Pillow format names keyed by the user-facing format string
FORMAT_NAMES = {
    'png': 'PNG',
    'jpg': 'JPEG',
    'jpeg': 'JPEG',
    'tiff': 'TIFF',
    'tif': 'TIFF',
    'bmp': 'BMP',
    'webp': 'WEBP',
    'gif': 'GIF',
}
LOSSY_FORMATS = ('JPEG', 'WEBP')

# Character-code prefixes of an EXIF UserComment (8 bytes)
USER_COMMENT_ASCII = b"ASCII\x00\x00\x00"
USER_COMMENT_UNICODE = b"UNICODE\x00"

_MODES = {1: 'L', 3: 'RGB', 4: 'RGBA'}


@dataclass(frozen=True, eq=False)
class Image:
    """
    Decoded pixel data plus its extent.

    The array is copied on construction and marked read-only, so an Image
    can be shared between stages and threads without defensive copies.
    """

    pixels: np.ndarray
    source: Optional[Path] = None

    def __post_init__(self):
        pixels = np.asarray(self.pixels)
        if pixels.ndim == 2:
            pixels = pixels[:, :, np.newaxis]
        if pixels.ndim != 3 or pixels.shape[2] not in _MODES:
            raise ValueError(f"pixels must have shape (H, W, 1|3|4), got {pixels.shape}")
        if pixels.shape[0] < 1 or pixels.shape[1] < 1:
            raise ValueError(f"image must be at least 1x1, got {pixels.shape[1]}x{pixels.shape[0]}")
        pixels = np.array(pixels, dtype=np.uint8, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, 'pixels', pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def mode(self) -> str:
        return _MODES[self.channels]

    @property
    def extent(self) -> Rect:
        """The full image as a unit/bottom-left rect."""
        return Rect.unit(0, 0, self.width, self.height)

    def with_pixels(self, pixels: np.ndarray) -> 'Image':
        """Return a new Image with different pixels and the same source."""
        return Image(pixels, self.source)

    def to_pil(self) -> PILImage.Image:
        if self.channels == 1:
            return PILImage.fromarray(np.ascontiguousarray(self.pixels[:, :, 0]))
        return PILImage.fromarray(np.ascontiguousarray(self.pixels))

    @classmethod
    def from_pil(cls, pil_image: PILImage.Image, source: Optional[Path] = None) -> 'Image':
        if pil_image.mode not in ('L', 'RGB', 'RGBA'):
            pil_image = pil_image.convert('RGBA' if 'A' in pil_image.getbands() else 'RGB')
        return cls(np.asarray(pil_image), source)

    def __eq__(self, other):
        if not isinstance(other, Image):
            return NotImplemented
        return self.pixels.shape == other.pixels.shape and bool(np.array_equal(self.pixels, other.pixels))

    __hash__ = None

    def __repr__(self):
        return f"Image({self.width}x{self.height} {self.mode})"


@dataclass
class ImageInfo:
    """Header-level facts about an image file."""

    width: int
    height: int
    format: str
    mode: str
    has_alpha: bool
    dpi: Tuple[float, float] = (72.0, 72.0)
    orientation: int = 1
    metadata: Dict[str, MetadataValue] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, MetadataValue]:
        return {
            'width': self.width,
            'height': self.height,
            'format': self.format,
            'mode': self.mode,
            'has_alpha': int(self.has_alpha),
            'dpi': [float(self.dpi[0]), float(self.dpi[1])],
            'orientation': self.orientation,
            'metadata': self.metadata,
        }


def to_metadata_value(raw) -> MetadataValue:
    """
    Normalize a raw metadata value into a MetadataValue.

    Rationals become floats, bytes become text, tuples become lists and
    mapping keys become strings.

    Raises:
        TypeError: If the value has no MetadataValue representation
    """
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, (int, str)):
        return raw
    if isinstance(raw, float):
        return raw
    if isinstance(raw, IFDRational):
        return float(raw)
    if isinstance(raw, np.generic):
        return raw.item()
    if isinstance(raw, bytes):
        return raw.decode('utf-8', errors='replace').rstrip('\x00')
    if isinstance(raw, (list, tuple)):
        return [to_metadata_value(item) for item in raw]
    if isinstance(raw, dict):
        return {str(key): to_metadata_value(value) for key, value in raw.items()}
    raise TypeError(f"unsupported metadata value type: {type(raw).__name__}")


class ImageCodec(Protocol):
    """Decoder/encoder collaborator."""

    def decode(self, path: Union[str, Path]) -> Image: ...

    def encode(self, image: Image, format: str, quality: Optional[float] = None) -> bytes: ...

    def save(self, image: Image, path: Union[str, Path], format: Optional[str] = None,
             quality: Optional[float] = None) -> Path: ...

    def read_info(self, path: Union[str, Path]) -> ImageInfo: ...

    def write(self, data: bytes, path: Union[str, Path]) -> Path: ...

    def write_metadata(self, path: Union[str, Path], output: Union[str, Path],
                       comment: Optional[str] = None, clear_gps: bool = False,
                       clear_all: bool = False) -> Path: ...


class PillowCodec:
    """
    Decode and encode images with Pillow.

    Decoding applies the EXIF orientation so pixel/top-left coordinates match
    what a viewer shows, and converts to RGB or RGBA.
    """

    def __init__(self, max_dimension: int = 16384):
        self.max_dimension = max_dimension

    def decode(self, path: Union[str, Path]) -> Image:
        """
        Decode an image file.

        Args:
            path: Image path

        Returns:
            Image with RGB or RGBA pixels

        Raises:
            DecodeFailed: If the file is missing, unreadable, not an image,
                or larger than max_dimension on either side
        """
        path = Path(path)
        image_id = image_identifier(path)

        try:
            with PILImage.open(path) as pil_image:
                # Header size only; pixels are not loaded yet
                self._check_dimensions(*pil_image.size)
                pil_image = ImageOps.exif_transpose(pil_image)
                has_alpha = 'A' in pil_image.getbands() or 'transparency' in pil_image.info
                pil_image = pil_image.convert('RGBA' if has_alpha else 'RGB')
        except FileNotFoundError as e:
            raise DecodeFailed(f"file not found: {path}") from e
        except PILImage.DecompressionBombError as e:
            raise DecodeFailed(f"could not decode {path}: {e}") from e
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise DecodeFailed(f"could not decode {path}: {e}") from e

        width, height = pil_image.size
        logger.debug(f"Decoded image_{image_id} ({width}x{height} {pil_image.mode})")
        return Image.from_pil(pil_image, source=path)

    def _check_dimensions(self, width: int, height: int) -> None:
        if width > self.max_dimension or height > self.max_dimension:
            raise DecodeFailed(
                f"image {width}x{height} exceeds maximum dimension {self.max_dimension}"
            )

    def encode(self, image: Image, format: str, quality: Optional[float] = None) -> bytes:
        """
        Encode an image to bytes.

        Args:
            image: Image to encode
            format: Output format (png, jpg, tiff, bmp, webp, gif); unknown
                formats fall back to png
            quality: Lossy quality in [0, 1], clamped; ignored by lossless formats

        Raises:
            EncodeFailed: If Pillow cannot write the image
        """
        format_name = FORMAT_NAMES.get(format.lower().lstrip('.'))
        if format_name is None:
            logger.warning(f"Unsupported output format '{format}', writing png")
            format_name = 'PNG'

        pil_image = image.to_pil()
        options = {}
        if format_name in LOSSY_FORMATS:
            if format_name == 'JPEG' and pil_image.mode != 'RGB':
                pil_image = pil_image.convert('RGB')
            if quality is not None:
                options['quality'] = int(round(max(0.0, min(1.0, quality)) * 100)) or 1
        if format_name == 'BMP' and pil_image.mode == 'RGBA':
            pil_image = pil_image.convert('RGB')

        buffer = BytesIO()
        try:
            pil_image.save(buffer, format=format_name, **options)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeFailed(f"could not encode {format_name}: {e}") from e

        return buffer.getvalue()

    def save(self, image: Image, path: Union[str, Path], format: Optional[str] = None,
             quality: Optional[float] = None) -> Path:
        """Encode and write an image, creating parent directories."""
        path = Path(path)
        format = format or path.suffix.lstrip('.') or 'png'
        return self.write(self.encode(image, format, quality), path)

    def write(self, data: bytes, path: Union[str, Path]) -> Path:
        """
        Write encoded bytes, creating parent directories.

        Raises:
            EncodeFailed: If the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise EncodeFailed(f"could not write {path}: {e}") from e

        logger.debug(f"Wrote {len(data)} bytes to image_{image_identifier(path)}")
        return path

    def write_metadata(self, path: Union[str, Path], output: Union[str, Path],
                       comment: Optional[str] = None, clear_gps: bool = False,
                       clear_all: bool = False) -> Path:
        """
        Copy an image to ``output`` with edited EXIF metadata.

        ``clear_all`` drops every EXIF tag except the orientation and wins
        over the other options. Otherwise ``clear_gps`` removes the GPS
        block and ``comment`` sets the EXIF UserComment. Pixels are not
        transformed; JPEG sources keep their quantization tables.

        Raises:
            DecodeFailed: If the source cannot be opened
            EncodeFailed: If the output cannot be written
        """
        path, output = Path(path), Path(output)
        try:
            with PILImage.open(path) as pil_image:
                self._check_dimensions(*pil_image.size)
                exif = pil_image.getexif()
                if clear_all:
                    orientation = exif.get(ExifTags.Base.Orientation)
                    exif = PILImage.Exif()
                    if orientation is not None:
                        exif[ExifTags.Base.Orientation] = orientation
                else:
                    if clear_gps and ExifTags.IFD.GPSInfo in exif:
                        del exif[ExifTags.IFD.GPSInfo]
                    if comment is not None:
                        exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
                        exif_ifd[ExifTags.Base.UserComment] = _encode_user_comment(comment)
                        if ExifTags.IFD.Exif not in exif:
                            exif[ExifTags.IFD.Exif] = exif_ifd

                format_name = FORMAT_NAMES.get(output.suffix.lower().lstrip('.')) or pil_image.format or 'PNG'
                options = {'exif': exif.tobytes()}
                if format_name == 'JPEG' and pil_image.format == 'JPEG':
                    options['quality'] = 'keep'

                buffer = BytesIO()
                try:
                    pil_image.save(buffer, format=format_name, **options)
                except (OSError, ValueError, KeyError) as e:
                    raise EncodeFailed(f"could not encode {format_name}: {e}") from e
        except FileNotFoundError as e:
            raise DecodeFailed(f"file not found: {path}") from e
        except PILImage.DecompressionBombError as e:
            raise DecodeFailed(f"could not decode {path}: {e}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise DecodeFailed(f"could not decode {path}: {e}") from e

        logger.info(f"Updated metadata of image_{image_identifier(path)} "
                    f"(comment={comment is not None}, clear_gps={clear_gps}, clear_all={clear_all})")
        return self.write(buffer.getvalue(), output)

    def read_info(self, path: Union[str, Path]) -> ImageInfo:
        """
        Read dimensions, format and metadata without decoding pixels.

        Raises:
            DecodeFailed: If the file cannot be opened as an image
        """
        path = Path(path)
        try:
            with PILImage.open(path) as pil_image:
                exif = pil_image.getexif()
                metadata = self._read_exif(exif)
                dpi = pil_image.info.get('dpi', (72.0, 72.0))
                return ImageInfo(
                    width=pil_image.width,
                    height=pil_image.height,
                    format=pil_image.format or "unknown",
                    mode=pil_image.mode,
                    has_alpha='A' in pil_image.getbands() or 'transparency' in pil_image.info,
                    dpi=(float(dpi[0]), float(dpi[1])),
                    orientation=int(exif.get(ExifTags.Base.Orientation, 1)),
                    metadata=metadata,
                )
        except FileNotFoundError as e:
            raise DecodeFailed(f"file not found: {path}") from e
        except PILImage.DecompressionBombError as e:
            raise DecodeFailed(f"could not read {path}: {e}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise DecodeFailed(f"could not read {path}: {e}") from e

    @staticmethod
    def _read_exif(exif) -> Dict[str, MetadataValue]:
        metadata: Dict[str, MetadataValue] = {}
        for tag_id, value in exif.items():
            name = ExifTags.TAGS.get(tag_id, str(tag_id))
            try:
                metadata[name] = to_metadata_value(value)
            except TypeError:
                logger.debug(f"Skipping EXIF tag {name} with unsupported value type")

        for ifd_name, ifd_id in (('Exif', ExifTags.IFD.Exif), ('GPSInfo', ExifTags.IFD.GPSInfo)):
            ifd = exif.get_ifd(ifd_id)
            if not ifd:
                continue
            tag_names = ExifTags.GPSTAGS if ifd_name == 'GPSInfo' else ExifTags.TAGS
            section: Dict[str, MetadataValue] = {}
            for tag_id, value in ifd.items():
                if tag_id == ExifTags.Base.UserComment and isinstance(value, bytes):
                    value = _decode_user_comment(value)
                try:
                    section[tag_names.get(tag_id, str(tag_id))] = to_metadata_value(value)
                except TypeError:
                    logger.debug(f"Skipping {ifd_name} tag {tag_id} with unsupported value type")
            metadata[ifd_name] = section

        return metadata


def _decode_user_comment(raw: bytes) -> str:
    """UserComment text without its 8-byte character-code prefix."""
    prefix, text = raw[:8], raw[8:]
    if prefix == USER_COMMENT_UNICODE:
        return text.decode('utf-16-le', errors='replace').rstrip('\x00')
    if prefix in (USER_COMMENT_ASCII, b"\x00" * 8):
        return text.decode('ascii', errors='replace').rstrip('\x00 ')
    return raw.decode('utf-8', errors='replace').rstrip('\x00')


def _encode_user_comment(text: str) -> bytes:
    # Pillow writes little-endian TIFF headers
    if text.isascii():
        return USER_COMMENT_ASCII + text.encode('ascii')
    return USER_COMMENT_UNICODE + text.encode('utf-16-le')
