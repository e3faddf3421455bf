from enum import Enum

import cv2
import numpy as np

from camloc.datatypes import Features


class DescriberType(str, Enum):
    """Enum for the image describers available to the localizer."""

    SIFT = "sift"
    ORB = "orb"
    AKAZE = "akaze"


def create_extractor(describer_type: DescriberType, max_features: int = 4000) -> cv2.Feature2D:
    """
    Create a cv2 detector and descriptor extractor.

    Args:
        describer_type: Type of describer to create.
        max_features: Upper bound on the number of keypoints (SIFT, ORB).

    Returns:
        A cv2.Feature2D instance.

    Raises:
        ValueError: If the describer type is not supported.

    """
    describer_type = DescriberType(describer_type)
    if describer_type == DescriberType.SIFT:
        return cv2.SIFT_create(nfeatures=max_features)
    if describer_type == DescriberType.ORB:
        return cv2.ORB_create(nfeatures=max_features)
    if describer_type == DescriberType.AKAZE:
        return cv2.AKAZE_create()
    msg = "Unsupported describer type"
    raise ValueError(msg)


class Describer:
    """Turns a grayscale image into keypoints and descriptors."""

    def __init__(
        self, describer_type: DescriberType | str = DescriberType.SIFT, max_features: int = 4000
    ) -> None:
        self.describer_type = DescriberType(describer_type)
        self.extractor = create_extractor(self.describer_type, max_features)

    @property
    def binary(self) -> bool:
        return self.describer_type in (DescriberType.ORB, DescriberType.AKAZE)

    def descriptor_layout(self) -> tuple[bool, int]:
        """Whether descriptors are binary, and their width (bytes or floats)."""
        return self.binary, self.extractor.descriptorSize()

    def describe(self, img: np.ndarray) -> Features:
        # grayscale
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
        kps, des = self.extractor.detectAndCompute(gray, None)

        if not kps or des is None:
            dim = self.extractor.descriptorSize()
            dtype = np.uint8 if self.binary else np.float32
            return Features(np.empty((0, 2)), np.empty((0, dim), dtype=dtype))

        pts = np.array([k.pt for k in kps], dtype=np.float64)
        des = np.asarray(des, dtype=np.uint8 if self.binary else np.float32)
        return Features(pts, des)
