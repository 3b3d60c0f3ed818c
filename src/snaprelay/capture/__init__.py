from .decoder import Decoder, PyAvH264Decoder, create_decoder
from .extractor import FrameExtractor, FrameExtractorConfig

__all__ = [
    "Decoder",
    "FrameExtractor",
    "FrameExtractorConfig",
    "PyAvH264Decoder",
    "create_decoder",
]
