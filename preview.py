import base64
import logging
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

PREVIEW_MAX_SIDE = 256
PREVIEW_JPEG_QUALITY = 50


def make_image_preview(data: bytes, mime_type: str, max_side: int = PREVIEW_MAX_SIDE) -> Optional[str]:
    """
    Builds a small JPEG thumbnail for an image file and returns it as a
    data URL. Returns None for non-images or bytes OpenCV cannot decode.
    """
    if not mime_type.startswith("image/") or not data:
        return None

    try:
        np_arr = np.frombuffer(data, np.uint8)
        img = cv2.imdecode(np_arr, cv2.IMREAD_COLOR)
        if img is None:
            logger.warning(f"Could not decode {mime_type} image for preview")
            return None

        h, w = img.shape[:2]
        scale = min(1.0, max_side / float(max(h, w)))
        if scale < 1.0:
            target = (max(1, int(w * scale)), max(1, int(h * scale)))
            img = cv2.resize(img, target, interpolation=cv2.INTER_AREA)

        retval, buffer = cv2.imencode('.jpg', img, [int(cv2.IMWRITE_JPEG_QUALITY), PREVIEW_JPEG_QUALITY])
        if not retval:
            logger.warning("Failed to encode preview to JPEG")
            return None
    except cv2.error as e:
        logger.warning(f"Preview generation failed: {e}")
        return None

    return "data:image/jpeg;base64," + base64.b64encode(buffer.tobytes()).decode("ascii")
