"""ENGINE — pure audio processing.

- restoration: denoise → background removal → de-clip → stereo → normalize
- inpaint: bidirectional LPC region regeneration
- export: deterministic container/codec transcoding
"""

from replicator.engine.audio import AudioBuffer, decode, encode
from replicator.engine.export import EXPORT_FORMATS, resolve_format
from replicator.engine.inpaint import validate_regions
from replicator.engine.pipeline import EngineResult, ProcessingEngine

__all__ = [
    "AudioBuffer",
    "decode",
    "encode",
    "EXPORT_FORMATS",
    "resolve_format",
    "validate_regions",
    "EngineResult",
    "ProcessingEngine",
]
