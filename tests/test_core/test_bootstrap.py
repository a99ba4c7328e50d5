"""Tests für Bootstrap-Erzeugung und Ergebnis-Framing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from fnhost.core.bootstrap import ResultMarkers, encode_input, render_bootstrap


class TestEncodeInput:
    def test_compact(self) -> None:
        assert encode_input({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_unicode_kept(self) -> None:
        assert encode_input({"name": "Jürgen"}) == '{"name":"Jürgen"}'

    def test_nan_rejected(self) -> None:
        with pytest.raises(ValueError):
            encode_input({"x": float("nan")})

    def test_unserializable_rejected(self) -> None:
        with pytest.raises(TypeError):
            encode_input({"x": object()})


class TestResultMarkers:
    def test_nonce_differs_per_invocation(self) -> None:
        assert ResultMarkers().nonce != ResultMarkers().nonce

    def test_split_extracts_envelope(self) -> None:
        m = ResultMarkers(nonce="abc")
        stdout = f"hello\nworld\n\n{m.begin}\n{{\"ok\":true,\"value\":42}}\n{m.end}\n"
        output, envelope = m.split(stdout)
        assert output.strip() == "hello\nworld"
        assert envelope == {"ok": True, "value": 42}

    def test_split_without_markers(self) -> None:
        m = ResultMarkers(nonce="abc")
        output, envelope = m.split("plain output")
        assert output == "plain output"
        assert envelope is None

    def test_forged_marker_with_other_nonce_is_output(self) -> None:
        real = ResultMarkers(nonce="real")
        forged = ResultMarkers(nonce="forged")
        stdout = (
            f"{forged.begin}\n{{\"ok\":true,\"value\":\"fake\"}}\n{forged.end}\n"
            f"{real.begin}\n{{\"ok\":true,\"value\":\"genuine\"}}\n{real.end}\n"
        )
        output, envelope = real.split(stdout)
        assert envelope == {"ok": True, "value": "genuine"}
        assert forged.begin in output

    def test_split_missing_end_marker(self) -> None:
        m = ResultMarkers(nonce="abc")
        output, envelope = m.split(f"before\n{m.begin}\n{{\"ok\":tr")
        assert output == "before\n"
        assert envelope is None

    def test_split_invalid_json(self) -> None:
        m = ResultMarkers(nonce="abc")
        output, envelope = m.split(f"out\n{m.begin}\nnot json\n{m.end}\n")
        assert envelope is None
        assert output.strip() == "out"


class TestRenderBootstrap:
    def test_embeds_constants_as_literals(self) -> None:
        m = ResultMarkers(nonce="n1")
        artifact = "/x/fn's.js"
        payload = json.dumps({"q": "a\"b"}, separators=(",", ":"))
        script = render_bootstrap(Path(artifact), payload, m, deps_dir=Path("/deps/fn"))
        assert f"const ARTIFACT = {json.dumps(artifact)};" in script
        assert 'const DEPS_DIR = "/deps/fn";' in script
        assert f"const RESULT_BEGIN = {json.dumps(m.begin)};" in script
        assert f"const INPUT_JSON = {json.dumps(payload)};" in script

    def test_no_deps_dir(self) -> None:
        script = render_bootstrap(Path("/x/fn.js"), "{}", ResultMarkers())
        assert "const DEPS_DIR = null;" in script

    def test_entry_point_order(self) -> None:
        script = render_bootstrap(Path("/x/fn.js"), "{}", ResultMarkers())
        default_pos = script.index("mod.default")
        assert default_pos < script.index("mod.handler") < script.index("mod.main")
