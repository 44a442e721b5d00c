# cascade_detector/integral_image.py
import numpy as np

from .errors import InvalidInput


class IntegralImage:
    """Core class for O(1) rectangle sum calculations"""

    def __init__(self, image, squared=False):
        """
        Compute integral image (summed area table)

        Args:
            image: 2D numpy array (height, width) of intensities
            squared: If True, accumulate squared intensities instead
        """
        image = np.asarray(image)
        if image.ndim != 2:
            raise InvalidInput("IntegralImage requires 2D array")

        dtype = np.int64 if np.issubdtype(image.dtype, np.integer) or image.dtype == bool else np.float64
        values = image.astype(dtype)
        if squared:
            values = values * values

        # Row-wise running sums, then column-wise
        table = np.cumsum(np.cumsum(values, axis=0, dtype=dtype), axis=1, dtype=dtype)

        # Pad with zeros so I[0][*] = I[*][0] = 0
        self.integral = np.pad(table, ((1, 0), (1, 0)), mode='constant')
        self.integral.flags.writeable = False
        self.height, self.width = image.shape
        self.squared = squared

    @property
    def shape(self):
        return self.integral.shape

    def rectangle_sum(self, x, y, w, h):
        """
        Sum of pixels in the rectangle with top-left (x, y) and size w x h

        Caller guarantees the rectangle lies inside the image.
        """
        I = self.integral
        return I[y + h, x + w] - I[y, x + w] - I[y + h, x] + I[y, x]

    def rectangle_sums(self, xs, ys, w, h):
        """
        Vectorized rectangle_sum for many top-left corners sharing one size

        Args:
            xs, ys: integer arrays of equal shape
            w, h: rectangle size

        Returns:
            Array of sums with the shape of xs
        """
        I = self.integral
        x2 = xs + w
        y2 = ys + h
        return I[y2, x2] - I[ys, x2] - I[y2, xs] + I[ys, xs]


def build_integral_images(pixels):
    """
    Build the integral image and the squared integral image of a pixel buffer

    Args:
        pixels: 2D grayscale array (height, width)

    Returns:
        (IntegralImage, IntegralImage) for intensities and squared intensities

    Raises:
        InvalidInput: if the buffer is not 2D or has a zero dimension
    """
    if pixels is None:
        raise InvalidInput("Pixel buffer is missing")

    pixels = np.asarray(pixels)
    if pixels.ndim != 2:
        raise InvalidInput(f"Expected a 2D grayscale buffer, got shape {pixels.shape}")

    height, width = pixels.shape
    if width == 0 or height == 0:
        raise InvalidInput(f"Pixel buffer is empty ({width}x{height})")

    return IntegralImage(pixels), IntegralImage(pixels, squared=True)
