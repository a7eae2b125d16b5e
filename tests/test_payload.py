"""
Canonical payload codec tests.

Signer and verifier must agree byte for byte, and decoding must refuse
anything that is not exactly a well-typed version 1 document.
"""

import json
import unittest

from hrgate.payload import (
    MalformedPayloadError,
    SignalPayload,
    decode,
    encode,
    encode_for_signing,
)
from hrgate.signing import generate_keypair, issue, load_signing_key

NOW = 1_700_000_000


def _unsigned(**overrides) -> SignalPayload:
    fields = dict(
        version=1,
        subject_key="octocat",
        session_id="s1",
        reading=120,
        threshold=100,
        decision=True,
        expires_at=NOW + 15,
        nonce="0" * 32,
    )
    fields.update(overrides)
    return SignalPayload(**fields)


class TestCanonicalEncoding(unittest.TestCase):

    def test_exact_bytes(self):
        expected = (
            '{"decision":true,"expires_at":1700000015,"nonce":"' + "0" * 32 + '",'
            '"reading":120,"session_id":"s1","subject_key":"octocat","threshold":100,"v":1}'
        ).encode("utf-8")
        self.assertEqual(encode_for_signing(_unsigned()), expected)

    def test_deterministic(self):
        self.assertEqual(encode_for_signing(_unsigned()), encode_for_signing(_unsigned()))

    def test_signature_excluded_from_signing_bytes(self):
        self.assertEqual(
            encode_for_signing(_unsigned()),
            encode_for_signing(_unsigned(signature="ab" * 64)),
        )

    def test_integral_float_matches_int(self):
        self.assertEqual(
            encode_for_signing(_unsigned(reading=120.0, threshold=100.0)),
            encode_for_signing(_unsigned(reading=120, threshold=100)),
        )

    def test_fractional_float_positional(self):
        self.assertIn(b'"reading":72.5', encode_for_signing(_unsigned(reading=72.5)))
        self.assertIn(b'"reading":0.0000001', encode_for_signing(_unsigned(reading=1e-7)))

    def test_non_ascii_subject_kept_as_utf8(self):
        data = encode_for_signing(_unsigned(session_id="sé"))
        self.assertIn('"session_id":"sé"'.encode("utf-8"), data)

    def test_non_finite_rejected(self):
        with self.assertRaises(ValueError):
            encode_for_signing(_unsigned(reading=float("nan")))
        with self.assertRaises(ValueError):
            encode_for_signing(_unsigned(threshold=float("inf")))

    def test_encode_requires_signature(self):
        with self.assertRaises(ValueError):
            encode(_unsigned())

    def test_wire_document_includes_sig(self):
        data = encode(_unsigned(signature="ab" * 64))
        self.assertTrue(data.startswith(b'{"decision":true'))
        self.assertIn(b'"sig":"' + b"ab" * 64 + b'"', data)
        self.assertNotIn(b" ", data)
        self.assertFalse(data.endswith(b"\n"))


class TestDecode(unittest.TestCase):

    def setUp(self):
        private_hex, _ = generate_keypair()
        self.payload = issue("octocat", "s1", 120, 100, 15, load_signing_key(private_hex), now=NOW)
        self.wire = self.payload.to_wire()

    def _decode(self, doc) -> SignalPayload:
        return decode(json.dumps(doc).encode("utf-8"))

    def test_round_trip(self):
        self.assertEqual(decode(encode(self.payload)), self.payload)

    def test_accepts_str(self):
        self.assertEqual(decode(encode(self.payload).decode("utf-8")), self.payload)

    def test_missing_field(self):
        for name in self.wire:
            doc = dict(self.wire)
            del doc[name]
            with self.subTest(field=name), self.assertRaises(MalformedPayloadError):
                self._decode(doc)

    def test_null_field(self):
        for name in self.wire:
            doc = dict(self.wire, **{name: None})
            with self.subTest(field=name), self.assertRaises(MalformedPayloadError):
                self._decode(doc)

    def test_extra_field(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, extra=1))

    def test_bool_is_not_a_number(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, reading=True))

    def test_number_is_not_a_bool(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, decision=1))

    def test_string_number_rejected(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, expires_at=str(self.wire["expires_at"])))

    def test_unknown_version(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, v=2))

    def test_uppercase_signature_rejected(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, sig=self.wire["sig"].upper()))

    def test_short_nonce_rejected(self):
        with self.assertRaises(MalformedPayloadError):
            self._decode(dict(self.wire, nonce="abc"))

    def test_duplicate_field(self):
        text = encode(self.payload).decode("utf-8")
        text = text[:-1] + ',"v":1}'
        with self.assertRaises(MalformedPayloadError):
            decode(text)

    def test_nan_literal(self):
        text = encode(self.payload).decode("utf-8").replace('"reading":120', '"reading":NaN')
        with self.assertRaises(MalformedPayloadError):
            decode(text)

    def test_overflowing_number(self):
        text = encode(self.payload).decode("utf-8").replace('"reading":120', '"reading":1e400')
        with self.assertRaises(MalformedPayloadError):
            decode(text)

    def test_invalid_utf8(self):
        with self.assertRaises(MalformedPayloadError):
            decode(b"\xff\xfe")

    def test_not_json(self):
        with self.assertRaises(MalformedPayloadError):
            decode(b"hr_ok=true")

    def test_not_an_object(self):
        with self.assertRaises(MalformedPayloadError):
            decode(b"[1, 2]")


if __name__ == "__main__":
    unittest.main()
