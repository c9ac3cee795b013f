"""Tests for canonical request signing."""

import base64
import hashlib
import hmac

import pytest
from pydantic import SecretStr

from card_gate.signature import SignatureEngine, canonicalize, flatten_params, strip_signatures


def reference_signature(secret: str, canonical: str) -> str:
    digest = hmac.new(secret.encode(), canonical.encode(), hashlib.sha512).digest()
    return base64.b64encode(digest).decode()


class TestCanonicalization:
    """Test the canonical string the signature is computed over."""

    def test_flat_document(self):
        """Test key sorting and scalar rendering."""
        payload = {
            "payment": {"currency": "EUR", "amount": 999},
            "general": {"project_id": 1001, "payment_id": "p1"},
            "flag": True,
            "off": False,
            "empty": "",
            "missing": None,
            "items": [],
            "zero": 0,
        }
        assert canonicalize(payload) == ";".join([
            "empty:",
            "flag:1",
            "general:payment_id:p1",
            "general:project_id:1001",
            "off:0",
            "payment:amount:999",
            "payment:currency:EUR",
            "zero:0",
        ])

    def test_signature_fields_removed_at_any_depth(self):
        """Test that signature keys are ignored everywhere."""
        payload = {
            "general": {"payment_id": "p1", "signature": "abc"},
            "signature": "top",
            "nested": {"deeper": {"signature": "x", "keep": "y"}},
        }
        assert canonicalize(payload) == "general:payment_id:p1;nested:deeper:keep:y"

    def test_strip_does_not_mutate_input(self):
        """Test that stripping works on a copy."""
        payload = {"general": {"signature": "abc"}}
        stripped = strip_signatures(payload)
        assert stripped == {"general": {}}
        assert payload["general"]["signature"] == "abc"

    def test_arrays_use_indices(self):
        """Test array flattening with index path segments."""
        payload = {"items": ["a", {"x": 1}, None, True]}
        assert flatten_params(payload) == ["items:0:a", "items:1:x:1", "items:3:1"]

    def test_global_sort_differs_from_tree_order(self):
        """Test that the flat list is sorted again after flattening."""
        payload = {"a": {"z": 1}, "a0": 2}
        assert flatten_params(payload) == ["a:z:1", "a0:2"]
        assert canonicalize(payload) == "a0:2;a:z:1"

    def test_array_indices_sort_as_strings(self):
        """Test that index 10 sorts before index 2."""
        payload = {"l": ["x"] * 11}
        parts = canonicalize(payload).split(";")
        assert parts[:3] == ["l:0:x", "l:1:x", "l:10:x"]

    def test_integral_floats_render_as_integers(self):
        """Test float rendering."""
        assert canonicalize({"a": 10.0, "b": 1.5}) == "a:10;b:1.5"

    def test_empty_object_contributes_nothing(self):
        """Test that an empty nested object is left out."""
        assert canonicalize({"a": {}, "b": "c"}) == "b:c"

    def test_keys_sort_by_utf16_code_units(self):
        """Test that astral characters sort by their surrogate pair."""
        # U+1F600 encodes as D83D DE00, below U+FF61 in UTF-16
        payload = {"\uff61": "b", "\U0001F600": "a"}
        assert flatten_params(payload) == ["\U0001F600:a", "\uff61:b"]
        assert canonicalize(payload) == "\U0001F600:a;\uff61:b"


class TestSignatureEngine:
    """Test signing and verification."""

    def test_sign_matches_reference_hmac(self, signature_engine):
        """Test the signature against a direct HMAC-SHA512 computation."""
        payload = {"general": {"project_id": 1001, "payment_id": "p1"}, "amount": 999}
        expected = reference_signature(
            "sim_secret_key", "amount:999;general:payment_id:p1;general:project_id:1001"
        )
        assert signature_engine.sign(payload) == expected

    def test_signature_is_base64_of_64_bytes(self, signature_engine):
        """Test the encoded digest length."""
        signature = signature_engine.sign({"a": "b"})
        assert len(base64.b64decode(signature)) == 64

    def test_key_order_does_not_matter(self, signature_engine):
        """Test that equal documents sign identically."""
        first = {"b": 1, "a": {"y": 2, "x": 3}}
        second = {"a": {"x": 3, "y": 2}, "b": 1}
        assert signature_engine.sign(first) == signature_engine.sign(second)

    def test_verify_round_trip_with_embedded_signature(self, signature_engine):
        """Test verifying a document that carries its own signature."""
        payload = {"payment": {"id": "p1", "status": "success"}}
        payload["signature"] = signature_engine.sign(payload)
        assert signature_engine.verify(payload, payload["signature"]) is True

    def test_verify_detects_tampering(self, signature_engine):
        """Test that any changed value breaks verification."""
        payload = {"payment": {"id": "p1", "status": "decline"}}
        signature = signature_engine.sign(payload)
        payload["payment"]["status"] = "success"
        assert signature_engine.verify(payload, signature) is False

    def test_verify_rejects_wrong_key(self):
        """Test that a different secret does not verify."""
        payload = {"a": "b"}
        signature = SignatureEngine("other").sign(payload)
        assert SignatureEngine("sim_secret_key").verify(payload, signature) is False

    @pytest.mark.parametrize("signature", ["", None, 12345])
    def test_verify_rejects_missing_signature(self, signature_engine, signature):
        """Test that empty or non-string signatures fail."""
        assert signature_engine.verify({"a": "b"}, signature) is False

    def test_attach_sets_general_signature(self, signature_engine):
        """Test request signing."""
        body = signature_engine.attach({"general": {"project_id": 1001}, "x": "y"})
        assert body["general"]["signature"] == reference_signature(
            "sim_secret_key", "general:project_id:1001;x:y"
        )
        assert signature_engine.verify(body, body["general"]["signature"])

    def test_accepts_secret_str(self):
        """Test construction from a SecretStr."""
        engine = SignatureEngine(SecretStr("sim_secret_key"))
        assert engine.sign({"a": 1}) == SignatureEngine("sim_secret_key").sign({"a": 1})

    def test_empty_secret_rejected(self):
        """Test that an empty secret is a programming error."""
        with pytest.raises(ValueError):
            SignatureEngine("")
