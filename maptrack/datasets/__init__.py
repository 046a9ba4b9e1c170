from .image_sequence import CalibrationData, ImageSequenceSource

__all__ = ["CalibrationData", "ImageSequenceSource"]
