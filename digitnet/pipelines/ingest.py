# digitnet/pipelines/ingest.py

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
from PIL import Image

from digitnet.schemas.digit import DigitImage

logger = logging.getLogger(__name__)

IMAGE_EXTS = {".png", ".bmp", ".jpg", ".jpeg", ".pgm"}


def _label_from_parent(path: Path) -> Optional[int]:
    """Dataset layout is .../<digit>/<file>.png, so the parent dir is the label."""
    name = path.parent.name
    if name.isdigit() and 0 <= int(name) <= 9:
        return int(name)
    return None


def load_digit_image(path: Union[str, Path], root: Optional[Union[str, Path]] = None) -> DigitImage:
    """
    Load one grayscale digit.

    - identity: path relative to `root` (posix separators), or the content
      hash when no root is given
    - label: parent directory name when it is a digit
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with Image.open(path) as img:
        img.load()
        pixels = np.array(img.convert("L"), dtype=np.uint8)

    image = DigitImage(pixels, label=_label_from_parent(path))
    if root is not None:
        identity = path.resolve().relative_to(Path(root).resolve()).as_posix()
    else:
        identity = image.content_hash()
    return DigitImage(image.pixels, identity=identity, label=image.label)


def load_digit_dataset(root: Union[str, Path]) -> List[DigitImage]:
    """
    Load every image under `root/<digit>/`, sorted by path. Files that fail
    to load are logged and skipped.
    """
    root = Path(root)
    images: List[DigitImage] = []
    paths = sorted(p for p in root.glob("*/*") if p.suffix.lower() in IMAGE_EXTS)
    logger.info(f"Found {len(paths)} image files under {root}")

    for p in paths:
        try:
            images.append(load_digit_image(p, root=root))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load image {p}: {e}")
    return images
