"""Token counting shared by the scorer, packer and compactor."""

from typing import Any

# Lazy-loaded tiktoken encoder; None if the encoding could not be loaded.
_tiktoken_encoder: Any = None
_tiktoken_loaded: bool = False


def _get_encoder() -> Any:
    """Return the cl100k_base encoder, or None if it cannot be loaded."""
    global _tiktoken_encoder, _tiktoken_loaded
    if _tiktoken_loaded:
        return _tiktoken_encoder
    _tiktoken_loaded = True
    try:
        import tiktoken
        # cl100k_base covers GPT-4, Claude (approximate), and most modern models.
        _tiktoken_encoder = tiktoken.get_encoding("cl100k_base")
    except Exception:
        _tiktoken_encoder = None
    return _tiktoken_encoder


def count_tokens(text: str) -> int:
    """Count tokens in *text*. Falls back to a char/4 estimate without an encoder."""
    if not text:
        return 0
    enc = _get_encoder()
    if enc is not None:
        return len(enc.encode(text))
    return max(1, len(text) // 4)
