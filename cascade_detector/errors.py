# cascade_detector/errors.py
"""
Error types raised by the detector
"""


class CascadeDetectorError(Exception):
    """Base class for detector failures"""


class InvalidInput(CascadeDetectorError, ValueError):
    """Empty / zero-sized pixel buffer or an unusable search configuration"""


class MalformedCascade(CascadeDetectorError, ValueError):
    """Cascade definition could not be loaded"""
