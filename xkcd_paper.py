"""
xkcd Duotone Wallpaper

Fetches an xkcd comic, recolors it into a two-color duotone that fits the
screen with some padding, and hands the result to feh as the desktop
background. Raw comics are cached under ~/.cache/xkcd-paper so repeat runs
skip the image download.

Architecture:
    CanvasSpec      - screen size + padding reserved around the comic
    Duotone         - foreground/background endpoint colors
    DuotoneRenderer - decode, invert, fit, center and recolor a comic
    SelectionMode   - random / last / nth comic picking
    XkcdSource      - xkcd.com JSON API client
    ComicCache      - raw comic bytes keyed by comic number
    WallpaperSetter - pipes the final PNG into feh
    main()          - orchestrates everything
"""

from __future__ import annotations

import argparse
import io
import logging
import math
import os
import random
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Mapping, Optional, Sequence, Tuple

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# ─────────────────────────── Types ────────────────────────────

ColorRGBA = Tuple[int, int, int, int]
Size = Tuple[int, int]  # width, height
Offset = Tuple[int, int]  # x, y

# ─────────────────────────── Configuration ────────────────────

DEFAULT_MODE = "random"
DEFAULT_SIZE = "1366x768"
DEFAULT_PADDING = "20:20"
DEFAULT_FOREGROUND = "4ECDC4"
DEFAULT_BACKGROUND = "002A32"

XKCD_BASE_URL = "https://xkcd.com"
USER_AGENT = "xkcd-paper/0.1"
HTTP_TIMEOUT = 10  # seconds

CACHE_SUBDIR = Path(".cache") / "xkcd-paper"
FEH_COMMAND: Tuple[str, ...] = ("feh", "--bg-center", "-")

RESAMPLE_FILTER = Image.Resampling.BILINEAR  # triangle kernel


# ─────────────────────────── Errors ───────────────────────────

class XkcdPaperError(Exception):
    """Base class for every failure reported to the user."""
    stage = "xkcd-paper"


class ArgumentError(XkcdPaperError):
    stage = "arguments"


class SourceError(XkcdPaperError):
    stage = "xkcd.com"


class CacheError(XkcdPaperError):
    stage = "cache"


class ResolutionError(XkcdPaperError):
    stage = "fetch"


class TransformError(XkcdPaperError):
    stage = "transform"


class DecodeError(TransformError):
    stage = "decode"


class CompositeError(TransformError):
    stage = "composite"


class EncodeError(TransformError):
    stage = "encode"


class WallpaperError(XkcdPaperError):
    stage = "wallpaper"


# ─────────────────────────── Canvas & Colors ──────────────────

@dataclass(frozen=True)
class CanvasSpec:
    """
    Target screen and the border kept free around the comic.

    Padding is subtracted once from each dimension (not once per side)
    before the comic is scaled, so "20:20" leaves 10px on every edge
    of a comic that fills the screen.
    """
    width: int
    height: int
    padding_x: int = 0
    padding_y: int = 0

    @property
    def size(self) -> Size:
        return (self.width, self.height)

    @property
    def available_width(self) -> int:
        return self.width - self.padding_x

    @property
    def available_height(self) -> int:
        return self.height - self.padding_y


@dataclass(frozen=True)
class Duotone:
    """
    The two endpoint colors of the recolor.

    fg: Where the inverted comic is brightest (the line art).
    bg: Where the inverted comic is darkest (the paper).
    """
    fg: ColorRGBA
    bg: ColorRGBA

    @classmethod
    def from_hex(cls, fg: str, bg: str) -> "Duotone":
        return cls(fg=parse_color(fg), bg=parse_color(bg))

    def describe(self) -> str:
        return f"fg={_hex(self.fg)} bg={_hex(self.bg)}"


def _hex(c: ColorRGBA) -> str:
    return "#{:02x}{:02x}{:02x}".format(*c[:3])


def parse_size(value: str) -> Size:
    # WxH
    m = re.fullmatch(r"\s*(\d+)\s*x\s*(\d+)\s*", value)
    if not m:
        raise ArgumentError(f"couldn't parse the size {value!r} (expected <width>x<height>)")
    w = int(m.group(1))
    h = int(m.group(2))
    if w <= 0 or h <= 0:
        raise ArgumentError(f"invalid size {value!r} (width and height must be > 0)")
    return (w, h)


def parse_padding(value: str) -> Tuple[int, int]:
    # H:V
    m = re.fullmatch(r"\s*(\d+)\s*:\s*(\d+)\s*", value)
    if not m:
        raise ArgumentError(
            f"couldn't parse the padding {value!r} (expected <horizontal>:<vertical>)"
        )
    return (int(m.group(1)), int(m.group(2)))


def parse_color(value: str) -> ColorRGBA:
    """Parse RRGGBB (an optional leading '#' is tolerated) into opaque RGBA."""
    m = re.fullmatch(r"\s*#?([0-9a-fA-F]{6})\s*", value)
    if not m:
        raise ArgumentError(f"couldn't parse the color {value!r} (expected RRGGBB)")
    r, g, b = bytes.fromhex(m.group(1))
    return (r, g, b, 255)


# ─────────────────────────── Geometry ─────────────────────────

def fit_scale(source: Size, canvas: CanvasSpec) -> float:
    """
    Uniform scale factor that fits `source` into the padded canvas.

    Never above 1.0: comics are only ever shrunk, upscaling would just
    blur the line art.

    Raises:
        CompositeError: if the padding leaves no room at all.
    """
    if canvas.available_width <= 0 or canvas.available_height <= 0:
        raise CompositeError(
            f"padding {canvas.padding_x}:{canvas.padding_y} leaves no room "
            f"on a {canvas.width}x{canvas.height} canvas"
        )
    src_w, src_h = source
    if src_w <= 0 or src_h <= 0:
        raise CompositeError(f"comic has an empty size {src_w}x{src_h}")
    return min(
        canvas.available_width / src_w,
        canvas.available_height / src_h,
        1.0,
    )


def fitted_size(source: Size, factor: float) -> Size:
    """Scaled size, halves rounded up, never below one pixel."""
    src_w, src_h = source
    return (
        max(1, math.floor(src_w * factor + 0.5)),
        max(1, math.floor(src_h * factor + 0.5)),
    )


def center_offset(canvas: Size, image: Size) -> Offset:
    """Top-left paste position that centers `image` on `canvas`."""
    canvas_w, canvas_h = canvas
    img_w, img_h = image
    if img_w > canvas_w or img_h > canvas_h:
        raise CompositeError(
            f"a {img_w}x{img_h} image doesn't fit a {canvas_w}x{canvas_h} canvas"
        )
    return ((canvas_w - img_w) // 2, (canvas_h - img_h) // 2)


# ─────────────────────────── Pixel Math ───────────────────────

def invert_rgb(pixels: np.ndarray) -> np.ndarray:
    """Invert R, G and B of an (H, W, 4) uint8 array; alpha is untouched."""
    out = pixels.copy()
    out[..., :3] = 255 - out[..., :3]
    return out


def recolor_pixels(pixels: np.ndarray, duotone: Duotone, fill: bool = False) -> np.ndarray:
    """
    Map an (H, W, 4) uint8 RGBA array onto the duotone.

    Each pixel is handled on its own:
      - neutral pixels (R == G == B) become fg * mix + bg * (1 - mix)
        with mix = R / 255
      - chromatic pixels (anti-aliasing fringes, colored panels) drift
        toward their own inverted color, weighted by how far they sit
        from gray, so edges don't collapse into one flat duotone value

    Only R, G and B are recolored. Alpha is kept as is and pixels with
    no coverage (alpha == 0) are returned unchanged, unless `fill` is set:
    then every pixel is recolored and the result is fully opaque, so an
    empty margin comes out as solid bg.
    """
    rgb = pixels[..., :3].astype(np.float64)

    avg = rgb.sum(axis=-1, keepdims=True) / 3.0
    delta = np.abs(rgb - avg).sum(axis=-1, keepdims=True) / 510.0
    delta = np.clip(delta, 0.0, 1.0)

    mix = rgb[..., 0:1] / 255.0
    fg = np.asarray(duotone.fg[:3], dtype=np.float64)
    bg = np.asarray(duotone.bg[:3], dtype=np.float64)
    duo = fg * mix + bg * (1.0 - mix)
    inverted = 255.0 - rgb

    blended = (1.0 - delta) * duo + delta * inverted
    # halves round up
    recolored = np.clip(np.floor(blended + 0.5), 0, 255).astype(np.uint8)

    out = pixels.copy()
    if fill:
        out[..., :3] = recolored
        out[..., 3] = 255
        return out
    covered = pixels[..., 3:4] > 0
    out[..., :3] = np.where(covered, recolored, pixels[..., :3])
    return out


# ─────────────────────────── Renderer ─────────────────────────

class DuotoneRenderer:
    """
    Turns raw comic bytes into the final wallpaper PNG.

    Stages run in a fixed order: decode, invert, resize, composite,
    recolor, encode. Nothing is written anywhere; the PNG is returned.
    """

    def __init__(self, canvas: CanvasSpec, duotone: Duotone, fill: bool = False):
        self.canvas = canvas
        self.duotone = duotone
        self.fill = fill

    def render(self, raw: bytes) -> bytes:
        img = self._decode(raw)
        img = self._invert(img)
        img = self._resize(img)
        canvas = self._composite(img)
        canvas = self._recolor(canvas)
        return self._encode(canvas)

    def _decode(self, raw: bytes) -> Image.Image:
        """Decode with the format sniffed from the bytes themselves."""
        try:
            with Image.open(io.BytesIO(raw)) as im:
                im.load()
                return im.convert("RGBA")
        except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"not a recognizable image: {exc}") from exc
        # Pillow reports some broken chunks as SyntaxError.
        except (OSError, ValueError, SyntaxError) as exc:
            raise DecodeError(f"malformed image data: {exc}") from exc

    def _invert(self, img: Image.Image) -> Image.Image:
        return Image.fromarray(invert_rgb(np.asarray(img)))

    def _resize(self, img: Image.Image) -> Image.Image:
        factor = fit_scale(img.size, self.canvas)
        size = fitted_size(img.size, factor)
        logger.debug("Scaling %dx%d by %.4f to %dx%d", *img.size, factor, *size)
        if size == img.size:
            return img
        return img.resize(size, RESAMPLE_FILTER)

    def _composite(self, img: Image.Image) -> Image.Image:
        offset = center_offset(self.canvas.size, img.size)
        canvas = Image.new("RGBA", self.canvas.size, (0, 0, 0, 0))
        canvas.paste(img, offset)
        return canvas

    def _recolor(self, img: Image.Image) -> Image.Image:
        return Image.fromarray(recolor_pixels(np.asarray(img), self.duotone, self.fill))

    def _encode(self, img: Image.Image) -> bytes:
        buf = io.BytesIO()
        try:
            img.save(buf, format="PNG")
        except (OSError, ValueError) as exc:
            raise EncodeError(f"couldn't write the PNG: {exc}") from exc
        return buf.getvalue()


def transform(
    raw: bytes, canvas: CanvasSpec, fg: ColorRGBA, bg: ColorRGBA, fill: bool = False
) -> bytes:
    """Run the whole recolor pipeline on `raw` and return PNG bytes."""
    return DuotoneRenderer(canvas, Duotone(fg=fg, bg=bg), fill).render(raw)


# ─────────────────────────── Selection ────────────────────────

class ModeKind(Enum):
    """How the comic number is chosen."""
    RANDOM = auto()   # Any comic except the newest one
    LAST = auto()     # The newest comic
    NTH = auto()      # An explicit comic number


@dataclass(frozen=True)
class SelectionMode:
    kind: ModeKind
    nth: Optional[int] = None

    @classmethod
    def parse(cls, value: str) -> "SelectionMode":
        text = value.strip().lower()
        if text == "random":
            return cls(ModeKind.RANDOM)
        if text == "last":
            return cls(ModeKind.LAST)
        if re.fullmatch(r"\d+", text):
            return cls(ModeKind.NTH, int(text))
        raise ArgumentError(f"invalid mode {value!r} (expected random, last or a comic number)")


def select(mode: SelectionMode, last_index: int, rng: Optional[random.Random] = None) -> int:
    """
    Pick a comic number.

    Args:
        mode:       Selection mode from the command line
        last_index: Number of the newest comic
        rng:        Random source for RANDOM mode (module `random` if None)

    Returns:
        LAST -> last_index, NTH -> the requested number as given,
        RANDOM -> uniform pick in [1, last_index).
    """
    if mode.kind is ModeKind.LAST:
        return last_index
    if mode.kind is ModeKind.NTH:
        return mode.nth
    if last_index < 2:
        raise ArgumentError(f"can't pick a random comic below #{last_index}")
    return (rng or random).randrange(1, last_index)


def validate_index(index: int, last_index: int) -> int:
    if index < 1 or index > last_index:
        raise ArgumentError(f"{index} is not a valid xkcd number (1-{last_index})")
    return index


# ─────────────────────────── xkcd.com ─────────────────────────

class XkcdSource:
    """Thin client for the xkcd JSON API (info.0.json)."""

    def __init__(
        self,
        base_url: str = XKCD_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session

    def _get(self, url: str) -> requests.Response:
        logger.debug("GET %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise SourceError(f"couldn't reach {url}: {exc}") from exc
        return response

    def _metadata(self, url: str) -> dict:
        response = self._get(url)
        try:
            data = response.json()
        except ValueError as exc:
            raise SourceError(f"failed to parse the JSON response of {url}") from exc
        if not isinstance(data, dict):
            raise SourceError(f"unexpected JSON response from {url}")
        return data

    def latest_index(self) -> int:
        url = f"{self.base_url}/info.0.json"
        num = self._metadata(url).get("num")
        if not isinstance(num, int) or isinstance(num, bool) or num < 1:
            raise SourceError(f"no comic number in the response of {url}")
        return num

    def image_url(self, index: int) -> str:
        url = f"{self.base_url}/{index}/info.0.json"
        img = self._metadata(url).get("img")
        if not isinstance(img, str) or not img:
            raise SourceError(f"no image url for comic {index}")
        return img

    def image_bytes(self, index: int) -> bytes:
        url = self.image_url(index)
        response = self._get(url)
        try:
            content = response.content
        except requests.RequestException as exc:
            raise SourceError(f"failed to read the bytes of {url}") from exc
        if not content:
            raise SourceError(f"empty image body from {url}")
        return content


# ─────────────────────────── Cache ────────────────────────────

class ComicCache:
    """
    Raw comic bytes on disk, one file per comic number.

    The root defaults to $HOME/.cache/xkcd-paper and is resolved lazily,
    so a missing HOME only surfaces as a CacheError on first use.
    """

    def __init__(self, root: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None):
        self._root = Path(root) if root is not None else None
        self._environ = os.environ if environ is None else environ

    @property
    def root(self) -> Path:
        if self._root is not None:
            return self._root
        home = self._environ.get("HOME")
        if not home:
            raise CacheError("HOME is not set")
        return Path(home) / CACHE_SUBDIR

    def path_for(self, index: int) -> Path:
        return self.root / f"{index}.png"

    def read(self, index: int) -> bytes:
        path = self.path_for(index)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise CacheError(f"comic {index} is not cached") from exc
        except OSError as exc:
            raise CacheError(f"couldn't read {path}: {exc}") from exc

    def write(self, index: int, data: bytes) -> Path:
        path = self.path_for(index)
        tmp = path.with_suffix(path.suffix + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as exc:
            raise CacheError(f"couldn't write {path}: {exc}") from exc
        return path


def resolve_bytes(index: int, cache: ComicCache, source: XkcdSource) -> bytes:
    """
    Raw bytes for comic `index`: cache first, then a single network fetch.

    A fresh download is written back to the cache; failing to do so is
    only logged.

    Raises:
        ResolutionError: if the comic isn't cached and can't be fetched.
    """
    try:
        data = cache.read(index)
    except CacheError as exc:
        logger.info("Cache miss for comic %d (%s)", index, exc)
    else:
        logger.info("Using cached comic %d", index)
        return data

    try:
        data = source.image_bytes(index)
    except SourceError as exc:
        raise ResolutionError(f"couldn't get comic {index}: {exc}") from exc

    try:
        path = cache.write(index, data)
    except CacheError as exc:
        logger.warning("Couldn't cache comic %d: %s", index, exc)
    else:
        logger.debug("Cached comic %d at %s", index, path)
    return data


# ─────────────────────────── Wallpaper ────────────────────────

class WallpaperSetter:
    """Pipes a PNG into a one-shot wallpaper utility (feh by default)."""

    def __init__(self, command: Sequence[str] = FEH_COMMAND):
        if not command:
            raise ValueError("empty wallpaper command")
        self.command = tuple(command)

    @property
    def name(self) -> str:
        return Path(self.command[0]).name

    def apply(self, image: bytes) -> None:
        executable = shutil.which(self.command[0])
        if executable is None:
            raise WallpaperError(f"couldn't find {self.name}, check that it's in your PATH")

        try:
            proc = subprocess.Popen(
                [executable, *self.command[1:]], stdin=subprocess.PIPE, bufsize=0
            )
        except OSError as exc:
            raise WallpaperError(f"error running {self.name}: {exc}") from exc

        # Leaving the block closes stdin and reaps the child.
        with proc:
            try:
                self._write_all(proc.stdin, image)
                proc.stdin.close()
            except OSError as exc:
                proc.kill()
                raise WallpaperError(f"error piping the picture to {self.name}: {exc}") from exc

        if proc.returncode != 0:
            raise WallpaperError(f"{self.name} exited with code {proc.returncode}")

    @staticmethod
    def _write_all(pipe, data: bytes) -> None:
        # stdin is unbuffered, so a single write may be partial.
        view = memoryview(data)
        while view:
            written = pipe.write(view)
            view = view[written:]


# ─────────────────────────── CLI ──────────────────────────────

@dataclass(frozen=True)
class RunConfig:
    mode: SelectionMode
    canvas: CanvasSpec
    duotone: Duotone
    fill: bool = False
    verbose: bool = False


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ArgumentError(message)


def build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog="xkcd-paper",
        description="Set a duotone-recolored xkcd comic as the desktop wallpaper",
    )
    p.add_argument("-m", "--mode", default=DEFAULT_MODE, metavar="random/last/<number>",
                   help="xkcd selection (default: %(default)s)")
    p.add_argument("-s", "--size", default=DEFAULT_SIZE, metavar="<width>x<height>",
                   help="screen size; with several screens use the biggest "
                        "(default: %(default)s)")
    p.add_argument("-p", "--padding", default=DEFAULT_PADDING, metavar="<horizontal>:<vertical>",
                   help="padding around the comic (default: %(default)s)")
    p.add_argument("-f", "--foreground", default=DEFAULT_FOREGROUND, metavar="RRGGBB",
                   help="foreground color (default: %(default)s)")
    p.add_argument("-b", "--background", default=DEFAULT_BACKGROUND, metavar="RRGGBB",
                   help="background color (default: %(default)s)")
    p.add_argument("--fill", action="store_true",
                   help="paint the margins around the comic with the background color "
                        "instead of leaving them transparent")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> RunConfig:
    ns = build_parser().parse_args(argv)
    width, height = parse_size(ns.size)
    pad_x, pad_y = parse_padding(ns.padding)
    return RunConfig(
        mode=SelectionMode.parse(ns.mode),
        canvas=CanvasSpec(width, height, pad_x, pad_y),
        duotone=Duotone.from_hex(ns.foreground, ns.background),
        fill=ns.fill,
        verbose=ns.verbose,
    )


def run(
    config: RunConfig,
    source: Optional[XkcdSource] = None,
    cache: Optional[ComicCache] = None,
    setter: Optional[WallpaperSetter] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """Pick, fetch, recolor and apply one comic. Returns its number."""
    source = source or XkcdSource()
    cache = cache or ComicCache()
    setter = setter or WallpaperSetter()

    last = source.latest_index()
    index = validate_index(select(config.mode, last, rng), last)
    logger.info("Comic %d (latest is %d)", index, last)

    raw = resolve_bytes(index, cache, source)

    canvas = config.canvas
    logger.info(
        "Rendering %dx%d (padding %d:%d), %s",
        canvas.width, canvas.height, canvas.padding_x, canvas.padding_y,
        config.duotone.describe(),
    )
    png = DuotoneRenderer(canvas, config.duotone, config.fill).render(raw)

    logger.info("Handing %d bytes to %s", len(png), setter.name)
    setter.apply(png)
    return index


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Entry point. Exit status is 0 on success (and for --help), 1 when
    any stage fails; the failing stage is named in a one-line message.
    """
    try:
        config = parse_args(argv)
    except ArgumentError as exc:
        print(f"error: {exc.stage}: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        run(config)
    except XkcdPaperError as exc:
        logger.debug("Run failed", exc_info=True)
        print(f"error: {exc.stage}: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
