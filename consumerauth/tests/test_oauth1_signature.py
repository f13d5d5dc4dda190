"""Signature base strings and HMAC-SHA1 / RSA-SHA1 verification."""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from consumerauth.core.exceptions import InvalidRequestError
from consumerauth.oauth1.request import SignedRequest, parse_authorization_header
from consumerauth.oauth1.signature import (
    escape,
    hmac_sha1_signature,
    load_rsa_public_key,
    normalize_url,
    sign_request,
    signature_base_string,
    verify_signature,
)

# Worked example from the OAuth Core 1.0 appendix
PHOTOS_URL = "http://photos.example.net/photos"
PHOTOS_PARAMS = {
    "file": "vacation.jpg",
    "size": "original",
    "oauth_consumer_key": "dpf43f3p2l4k3l03",
    "oauth_token": "nnch734d00sl2jdk",
    "oauth_signature_method": "HMAC-SHA1",
    "oauth_timestamp": "1191242096",
    "oauth_nonce": "kllo9940pd9333jh",
    "oauth_version": "1.0",
}
PHOTOS_BASE_STRING = (
    "GET&http%3A%2F%2Fphotos.example.net%2Fphotos&file%3Dvacation.jpg"
    "%26oauth_consumer_key%3Ddpf43f3p2l4k3l03%26oauth_nonce%3Dkllo9940pd9333jh"
    "%26oauth_signature_method%3DHMAC-SHA1%26oauth_timestamp%3D1191242096"
    "%26oauth_token%3Dnnch734d00sl2jdk%26oauth_version%3D1.0%26size%3Doriginal"
)


@pytest.fixture(scope="module")
def rsa_keypair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


class TestBaseString:
    def test_reference_example(self):
        assert signature_base_string("GET", PHOTOS_URL, PHOTOS_PARAMS) == PHOTOS_BASE_STRING

    def test_reference_signature(self):
        signature = hmac_sha1_signature(PHOTOS_BASE_STRING, "kd94hf93k423kf44", "pfkkdhi9sl3r4s00")
        assert signature == "tR3+Ty81lMeYAr/Fid0kMTYa/WM="

    def test_signature_param_excluded(self):
        with_sig = dict(PHOTOS_PARAMS, oauth_signature="whatever")
        assert signature_base_string("GET", PHOTOS_URL, with_sig) == PHOTOS_BASE_STRING

    def test_escape_unreserved(self):
        assert escape("a b+c~d/e") == "a%20b%2Bc~d%2Fe"

    @pytest.mark.parametrize("url,expected", [
        ("HTTP://Example.COM:80/r", "http://example.com/r"),
        ("https://example.com:443/r", "https://example.com/r"),
        ("https://example.com:8443/r", "https://example.com:8443/r"),
        ("https://example.com", "https://example.com/"),
    ])
    def test_normalize_url(self, url, expected):
        assert normalize_url(url) == expected


class TestVerify:
    def test_hmac_round_trip_and_tamper(self):
        params = dict(PHOTOS_PARAMS)
        params["oauth_signature"] = sign_request(
            "GET", PHOTOS_URL, params, consumer_secret="kd94hf93k423kf44", token_secret="pfkkdhi9sl3r4s00",
        )
        assert verify_signature(
            "GET", PHOTOS_URL, params, consumer_secret="kd94hf93k423kf44", token_secret="pfkkdhi9sl3r4s00",
        )
        assert not verify_signature(
            "GET", PHOTOS_URL, params, consumer_secret="kd94hf93k423kf44", token_secret="wrong",
        )
        assert not verify_signature(
            "POST", PHOTOS_URL, params, consumer_secret="kd94hf93k423kf44", token_secret="pfkkdhi9sl3r4s00",
        )

    def test_rsa_round_trip_and_tamper(self, rsa_keypair):
        private_pem, public_pem = rsa_keypair
        params = dict(PHOTOS_PARAMS, oauth_signature_method="RSA-SHA1")
        params["oauth_signature"] = sign_request("GET", PHOTOS_URL, params, private_key_pem=private_pem)

        assert verify_signature("GET", PHOTOS_URL, params, consumer_secret="", rsa_public_key=public_pem)

        tampered = dict(params, size="thumbnail")
        assert not verify_signature("GET", PHOTOS_URL, tampered, consumer_secret="", rsa_public_key=public_pem)

    def test_rsa_without_registered_key_fails(self, rsa_keypair):
        private_pem, _ = rsa_keypair
        params = dict(PHOTOS_PARAMS, oauth_signature_method="RSA-SHA1")
        params["oauth_signature"] = sign_request("GET", PHOTOS_URL, params, private_key_pem=private_pem)
        assert not verify_signature("GET", PHOTOS_URL, params, consumer_secret="secret", rsa_public_key="")

    def test_rsa_garbage_signature_fails(self, rsa_keypair):
        _, public_pem = rsa_keypair
        params = dict(PHOTOS_PARAMS, oauth_signature_method="RSA-SHA1", oauth_signature="not base64!!")
        assert not verify_signature("GET", PHOTOS_URL, params, consumer_secret="", rsa_public_key=public_pem)

    def test_rsa_signing_needs_private_key(self):
        params = dict(PHOTOS_PARAMS, oauth_signature_method="RSA-SHA1")
        with pytest.raises(ValueError):
            sign_request("GET", PHOTOS_URL, params)

    def test_load_rsa_public_key(self, rsa_keypair):
        _, public_pem = rsa_keypair
        assert load_rsa_public_key(public_pem) is not None
        assert load_rsa_public_key("-----BEGIN PUBLIC KEY-----\nnope\n-----END PUBLIC KEY-----") is None


class TestSignedRequest:
    def test_parse_authorization_header(self):
        header = 'OAuth realm="Example", oauth_consumer_key="abc", oauth_signature="a%2Bb%3D"'
        assert parse_authorization_header(header) == {"oauth_consumer_key": "abc", "oauth_signature": "a+b="}

    def test_non_oauth_header_ignored(self):
        assert parse_authorization_header("Bearer xyz") == {}
        assert parse_authorization_header(None) == {}

    def test_header_wins_over_query_and_form(self):
        request = SignedRequest.from_parts(
            "post",
            "https://id.example.org/oauth/initiate?x=1",
            authorization='OAuth oauth_nonce="from-header"',
            query={"oauth_nonce": "from-query", "x": "1"},
            form={"oauth_nonce": "from-form", "y": "2"},
        )
        assert request.method == "POST"
        assert request.url == "https://id.example.org/oauth/initiate"
        assert request.nonce == "from-header"
        assert request.params["x"] == "1"
        assert request.params["y"] == "2"

    def test_validate_reports_missing_parameters(self):
        request = SignedRequest(method="POST", url="https://id.example.org/", params={"oauth_consumer_key": "k"})
        with pytest.raises(InvalidRequestError) as exc_info:
            request.validate()
        assert "oauth_signature" in exc_info.value.message

    def test_validate_rejects_unknown_method_and_version(self):
        base = {
            "oauth_consumer_key": "k",
            "oauth_signature_method": "PLAINTEXT",
            "oauth_signature": "s",
            "oauth_timestamp": "1",
            "oauth_nonce": "n",
        }
        with pytest.raises(InvalidRequestError):
            SignedRequest(method="POST", url="https://x/", params=base).validate()
        with pytest.raises(InvalidRequestError):
            SignedRequest(
                method="POST", url="https://x/",
                params=dict(base, oauth_signature_method="HMAC-SHA1", oauth_version="2.0"),
            ).validate()

    def test_validate_rejects_non_integer_timestamp(self):
        params = {
            "oauth_consumer_key": "k",
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_signature": "s",
            "oauth_timestamp": "yesterday",
            "oauth_nonce": "n",
        }
        with pytest.raises(InvalidRequestError):
            SignedRequest(method="POST", url="https://x/", params=params).validate()
