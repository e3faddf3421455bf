"""Frame sources feeding query images to the localizer."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

import cv2
import numpy as np

from camloc.datatypes import FrameData, Intrinsic

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff")


class BaseFeed(ABC):
    """Abstract base class for a frame source. Iteration ends with the stream."""

    def __init__(self, intrinsic: Intrinsic | None = None) -> None:
        """
        Initialize the feed.

        Args:
            intrinsic: Known intrinsics attached to every frame, if any.

        """
        self.intrinsic = intrinsic

    @abstractmethod
    def __iter__(self) -> Iterator[FrameData]:
        """Yield the frames in stream order."""

    @staticmethod
    def to_gray(img: np.ndarray) -> np.ndarray:
        if img.ndim == 3:
            return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        return img


class ImageFolderFeed(BaseFeed):
    """Images of a directory in lexicographic order."""

    def __init__(self, folder: Path, intrinsic: Intrinsic | None = None) -> None:
        super().__init__(intrinsic)
        self.folder = Path(folder)
        if not self.folder.is_dir():
            msg = f"{self.folder} is not a directory"
            raise FileNotFoundError(msg)
        self.image_files = sorted(
            p for p in self.folder.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS
        )
        logger.info("found %d images in %s", len(self.image_files), self.folder)

    def __len__(self) -> int:
        return len(self.image_files)

    def __iter__(self) -> Iterator[FrameData]:
        for frame_id, path in enumerate(self.image_files):
            img = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
            if img is None:
                logger.warning("could not decode %s, skipped", path)
                continue
            yield FrameData(frame_id, path.name, img, self.intrinsic)


class VideoFeed(BaseFeed):
    """Frames of a video file, optionally subsampled."""

    def __init__(self, video: Path, intrinsic: Intrinsic | None = None, step: int = 1) -> None:
        super().__init__(intrinsic)
        self.video = Path(video)
        if not self.video.exists():
            msg = f"{self.video} does not exist"
            raise FileNotFoundError(msg)
        self.step = max(1, step)

    def __iter__(self) -> Iterator[FrameData]:
        cap = cv2.VideoCapture(str(self.video))
        if not cap.isOpened():
            msg = f"cannot open video {self.video}"
            raise OSError(msg)
        try:
            index = 0
            frame_id = 0
            while True:
                ok, img = cap.read()
                if not ok:
                    break
                if index % self.step == 0:
                    name = f"{self.video.stem}_{index:06d}"
                    yield FrameData(frame_id, name, self.to_gray(img), self.intrinsic)
                    frame_id += 1
                index += 1
        finally:
            cap.release()


def create_feed(source: Path, intrinsic: Intrinsic | None = None, step: int = 1) -> BaseFeed:
    """Pick the feed matching a path: a directory of images or a video file."""
    source = Path(source)
    if source.is_dir():
        return ImageFolderFeed(source, intrinsic)
    return VideoFeed(source, intrinsic, step)
