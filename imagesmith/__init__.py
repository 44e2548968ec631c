"""imagesmith: builds small, memory-resident FreeBSD disk images.

Core design goals:
- Expensive stages cached behind pool checkpoints and input fingerprints
- Every mount and memory disk released, also when interrupted
- Compressed output reused across builds
- One project directory per image (imagesmith.yml + overlay/)
"""

__all__ = []
