'''
Signs the JSON Web Token that authenticates every call to the App Store Server API.

  https://developer.apple.com/documentation/appstoreserverapi/generating-json-web-tokens-for-api-requests

A token is created fresh for each request and is never cached, it's valid for one hour from issue.
'''

import base64
import binascii
import logging
import string
import time

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

import base
from platform_apple_types import APIError, APIErrorKind, APIResult

TOKEN_AUDIENCE:   str = 'appstoreconnect-v1'
TOKEN_ALGORITHM:  str = 'ES256'
TOKEN_LIFETIME_S: int = 60 * 60

log = logging.Logger('APPLE_JWT')

def _config_error(field: str, msg: str) -> APIResult[str]:
    result = APIResult[str](error=APIError(kind=APIErrorKind.InvalidConfiguration, msg=msg, field=field))
    return result

def _strip_whitespace(text: str) -> str:
    result = text.translate({ord(c): None for c in string.whitespace})
    return result

def load_private_key(private_key: str) -> APIResult[ec.EllipticCurvePrivateKey]:
    """
    Decode a base64 PKCS#8 DER private key. The key must be an elliptic curve key on P-256 as
    that's the only curve that ES256 signs with.
    """
    key_text = _strip_whitespace(private_key)
    try:
        key_der = base64.b64decode(key_text, validate=True)
    except (binascii.Error, ValueError):
        key_der = b''

    # NOTE: Whitespace-only text decodes to nothing, treat it the same as invalid base64
    if len(key_der) == 0:
        return APIResult(error=APIError(kind=APIErrorKind.InvalidConfiguration,
                                        msg='AppStoreServerApiSubscriptionKey is not a valid Base64 string',
                                        field='AppStoreServerApiSubscriptionKey'))

    try:
        key = serialization.load_der_private_key(key_der, password=None)
    # NOTE: Well-formed PKCS#8 with an algorithm or curve the library doesn't know raises UnsupportedAlgorithm
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        return APIResult(error=APIError(kind=APIErrorKind.KeyImport,
                                        msg=f'AppStoreServerApiSubscriptionKey could not be imported as a PKCS#8 private key: {e}',
                                        exception=e))

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        return APIResult(error=APIError(kind=APIErrorKind.KeyImport,
                                        msg=f'AppStoreServerApiSubscriptionKey is not an elliptic curve key, received {type(key).__name__}'))

    if not isinstance(key.curve, ec.SECP256R1):
        return APIResult(error=APIError(kind=APIErrorKind.KeyImport,
                                        msg=f'AppStoreServerApiSubscriptionKey must be on curve P-256 for {TOKEN_ALGORITHM}, received {key.curve.name}'))

    return APIResult(value=key)

def sign_token(key_id: str, issuer_id: str, private_key: str, bundle_id: str, now_unix_ts_s: int | None = None) -> APIResult[str]:
    """
    Returns a signed JSON Web Token for calling the App Store Server API.

    Args:
        key_id: Your private key ID from App Store Connect
        issuer_id: Your issuer ID from the API Keys page in App Store Connect
        private_key: The private key that was generated by Apple, PKCS#8 DER encoded as base64
        bundle_id: Your app's bundle ID, embedded as a claim and not validated
        now_unix_ts_s: Issue time, defaults to the current time

    The error of the result is `InvalidConfiguration` for a missing/malformed field and `KeyImport`
    if the key bytes are not a usable ES256 key.
    """
    if len(key_id) == 0:
        return _config_error('AppStoreServerApiKeyId', 'AppStoreServerApiKeyId was not provided. Please check your configuration.')

    if len(issuer_id) == 0:
        return _config_error('AppStoreServerApiIssuerId', 'AppStoreServerApiIssuerId was not provided. Please check your configuration.')

    if len(private_key) == 0:
        return _config_error('AppStoreServerApiSubscriptionKey', 'AppStoreServerApiSubscriptionKey was not provided. Please check your configuration.')

    key_result = load_private_key(private_key)
    if key_result.error is not None:
        return APIResult[str](error=key_result.error)
    assert key_result.value is not None

    issued_at = int(time.time()) if now_unix_ts_s is None else now_unix_ts_s
    claims = {
        'iss': issuer_id,
        'iat': issued_at,
        'exp': issued_at + TOKEN_LIFETIME_S,
        'aud': TOKEN_AUDIENCE,
        'bid': bundle_id,
    }

    try:
        token = jwt.encode(claims, key_result.value, algorithm=TOKEN_ALGORITHM, headers={'kid': key_id, 'typ': 'JWT'})
    except (jwt.exceptions.PyJWTError, ValueError, TypeError) as e:
        return APIResult[str](error=APIError(kind=APIErrorKind.KeyImport, msg=f'Failed to sign token with {TOKEN_ALGORITHM}: {e}', exception=e))

    log.debug(f'Signed token for key {base.safe_obfuscate(key_id)}, valid until {issued_at + TOKEN_LIFETIME_S}')
    return APIResult[str](value=token)
