"""
Unit tests for cache payload codecs.
"""

import json
from datetime import datetime, timezone
from typing import List

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import SerializationError
from service_cache.app.caching.serialization import CacheCodec, codec_for
from service_cache.app.models import FavoriteStatus, TagCloudEntry


class TestCacheCodec:
    """Test cases for CacheCodec."""

    def test_model_payload_uses_camel_case(self):
        codec = codec_for(FavoriteStatus)
        status = FavoriteStatus(
            article_id="art-1",
            is_favorited=True,
            favorited_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

        payload = json.loads(codec.encode(status))

        assert payload["v"] == 1
        assert payload["data"]["articleId"] == "art-1"
        assert payload["data"]["isFavorited"] is True
        assert codec.decode(codec.encode(status)) == status

    def test_list_of_models(self):
        codec = codec_for(List[TagCloudEntry])
        entries = [TagCloudEntry(name="rust", count=4)]

        assert codec.decode(codec.encode(entries)) == entries

    def test_invalid_json_raises(self):
        with pytest.raises(SerializationError):
            CacheCodec().decode("not-json")

    def test_payload_without_envelope_raises(self):
        with pytest.raises(SerializationError):
            CacheCodec().decode(json.dumps({"articleCount": 1}))

    def test_version_mismatch_raises(self):
        payload = CacheCodec(schema_version=1).encode({"a": 1})

        with pytest.raises(SerializationError) as exc_info:
            CacheCodec(schema_version=2).decode(payload)

        assert exc_info.value.details == {"expected": 2, "found": 1}

    def test_shape_mismatch_raises(self):
        payload = CacheCodec().encode({"count": "many"})

        with pytest.raises(SerializationError):
            codec_for(TagCloudEntry).decode(payload)
