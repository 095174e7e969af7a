"""Reshapes MCP tool results to fit a downstream model's size limits.

Screenshots are scaled down to the model's image budget and re-encoded
as WebP; long text blocks are truncated. Anything that is not a
JSON-RPC result carrying a ``content`` list passes through untouched.
"""

from __future__ import annotations

import logging
from typing import Any

from abpctl.config.settings import TransformConfig
from abpctl.utils.imaging import (
    decode_base64_image,
    encode_base64_image,
    resize_for_budget,
    scaled_size,
    shrink_factor,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [truncated]"


class ResponseTransformer:
    """Applies image and text budgets to the content items of a result."""

    def __init__(self, config: TransformConfig | None = None) -> None:
        self._config = config or TransformConfig()

    @property
    def config(self) -> TransformConfig:
        return self._config

    def transform(self, response: Any) -> Any:
        """Return ``response`` with its content items resized/truncated.

        The input is never mutated; a shallow copy is returned when any
        change applies.
        """
        if not _is_jsonrpc_result(response):
            return response
        result = response["result"]
        if not isinstance(result, dict) or not isinstance(result.get("content"), list):
            return response

        content = [self.transform_item(item) for item in result["content"]]
        return {**response, "result": {**result, "content": content}}

    def transform_item(self, item: Any) -> Any:
        if not isinstance(item, dict):
            return item
        if item.get("type") == "image" and item.get("data"):
            return self.scale_image(item)
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            return self.truncate_text(item)
        return item

    def scale_image(self, item: dict[str, Any]) -> dict[str, Any]:
        """Fit an image item into the budget, or return it unchanged on failure."""
        cfg = self._config
        try:
            image = decode_base64_image(item["data"])
            width, height = image.size
            factor = shrink_factor(
                width, height, cfg.max_image_dimension, cfg.max_image_pixels
            )
            if factor >= 1:
                if item.get("mimeType") == cfg.image_mime_type:
                    return item
            else:
                image = resize_for_budget(image, *scaled_size(width, height, factor))
            data = encode_base64_image(image, cfg.image_mime_type, cfg.image_quality)
        except Exception as e:
            logger.debug("Image passthrough, could not rescale: %s", e)
            return item
        return {**item, "data": data, "mimeType": cfg.image_mime_type}

    def truncate_text(self, item: dict[str, Any]) -> dict[str, Any]:
        limit = self._config.max_text_length
        text = item["text"]
        if len(text) <= limit:
            return item
        return {**item, "text": text[:limit] + TRUNCATION_MARKER}


def _is_jsonrpc_result(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and "jsonrpc" in message
        and "id" in message
        and "result" in message
    )
