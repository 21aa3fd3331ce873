"""Tests for the browser adapter's page-side helpers (no browser needed)."""

from __future__ import annotations

import json

from pairlink.backends.webclient import storage_init_script


class TestStorageInitScript:

    def test_values_are_json_literals(self):
        items = {"WAToken1": '"quoted"', "last-wid": "it's\nmultiline"}
        script = storage_init_script("https://web.whatsapp.com", items)
        assert 'location.origin !== "https://web.whatsapp.com"' in script
        assert f"const items = {json.dumps(items)};" in script

    def test_missing_origin_never_matches(self):
        script = storage_init_script(None, {"k": "v"})
        assert "location.origin !== null" in script
        assert "None" not in script
