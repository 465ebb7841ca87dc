"""
Luminance helpers shared by the detection stages.
Only the pixels a stage samples are converted; there is no full-frame gray buffer.
"""
import numpy as np

# ITU-R BT.601 weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Luminance of RGB(A) pixels; the trailing channel axis is dropped."""
    return pixels[..., :3].astype(np.float32) @ LUMA_WEIGHTS
