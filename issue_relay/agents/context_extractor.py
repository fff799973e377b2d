"""Turns a stage result into the plain text handed to the next stage."""

from typing import Any

from issue_relay.models.schemas import StageSuccess

EXTRACTION_PLACEHOLDER = "Error: Could not extract text from agent result."


def _block_text(block: Any) -> str | None:
    if isinstance(block, dict):
        kind, text = block.get("type"), block.get("text")
    else:
        kind, text = getattr(block, "type", None), getattr(block, "text", None)
    if kind == "text" and isinstance(text, str):
        return text
    return None


def extract(result: Any) -> str:
    """Plain text of a successful result, or EXTRACTION_PLACEHOLDER.

    Block lists resolve to their first text block. Never raises.
    """
    try:
        if not isinstance(result, StageSuccess):
            return EXTRACTION_PLACEHOLDER
        output = result.output
        if isinstance(output, str):
            return output
        if isinstance(output, (list, tuple)):
            for block in output:
                text = _block_text(block)
                if text is not None:
                    return text
    except Exception:
        return EXTRACTION_PLACEHOLDER
    return EXTRACTION_PLACEHOLDER
