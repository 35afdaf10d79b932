'''
Testing module for the App Store Server API client.

The token tests sign with a freshly generated P-256 key and verify the result with its public half.
The client tests swap the urllib3 pool for a fake that records each request and replays canned
responses, so no test touches the network.
'''

import base64
import dataclasses
import json
import logging
import time
import typing

import jwt
import pytest
import urllib3
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

import base
import config
import platform_apple_api
import platform_apple_jwt
from platform_apple_types import (
    APIErrorKind,
    AppStoreServerAPIException,
    Environment,
    InvalidConfigurationError,
    KeyImportError,
    LastTransactionsItem,
    NotificationHistoryRequest,
    ResponseParseError,
    Status,
    SubscriptionGroupIdentifierItem,
    SubscriptionStatusResponse,
    UnsupportedMethodError,
    parse_subscription_status_response,
    to_camel_case_json,
)

def generate_key_b64(curve: ec.EllipticCurve = ec.SECP256R1()) -> tuple[str, ec.EllipticCurvePublicKey]:
    key = ec.generate_private_key(curve)
    der = key.private_bytes(encoding=serialization.Encoding.DER,
                            format=serialization.PrivateFormat.PKCS8,
                            encryption_algorithm=serialization.NoEncryption())
    return base64.b64encode(der).decode('ascii'), key.public_key()

TEST_KEY_B64, TEST_PUBLIC_KEY = generate_key_b64()
TEST_KEY_ID                   = '2X9R4HXF34'
TEST_ISSUER_ID                = '57246542-96fe-1a63-e053-0824d011072a'
TEST_BUNDLE_ID                = 'com.example.app'

SUBSCRIPTION_STATUS_BODY: base.JSONObject = {
    'environment': 'Sandbox',
    'appAppleId':  1234567890,
    'bundleId':    TEST_BUNDLE_ID,
    'data': [
        {
            'subscriptionGroupIdentifier': '21474837',
            'lastTransactions': [
                {
                    'status':                1,
                    'originalTransactionId': '2000000000000001',
                    'signedTransactionInfo': 'eyJhbGciOiJFUzI1NiJ9.tx.sig',
                    'signedRenewalInfo':     'eyJhbGciOiJFUzI1NiJ9.renewal.sig',
                },
            ],
        },
    ],
}

@dataclasses.dataclass
class FakeResponse:
    status: int   = 200
    data:   bytes = b''

@dataclasses.dataclass
class RecordedRequest:
    method:  str
    url:     str
    body:    bytes | None
    headers: dict[str, str]
    timeout: typing.Any = None

@dataclasses.dataclass
class FakeHTTP:
    '''Stands in for urllib3.PoolManager, replays `responses` in order and records every request'''
    responses: list[FakeResponse | Exception] = dataclasses.field(default_factory=list)
    requests:  list[RecordedRequest]          = dataclasses.field(default_factory=list)

    def request(self, method: str, url: str, body: bytes | None = None, headers: dict[str, str] | None = None, **kwargs: typing.Any) -> FakeResponse:
        self.requests.append(RecordedRequest(method=method, url=url, body=body, headers=dict(headers or {}), timeout=kwargs.get('timeout')))
        assert len(self.responses) > 0, f'Unexpected request {method} {url}'
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

def json_response(status: int, body: base.JSONValue) -> FakeResponse:
    return FakeResponse(status=status, data=json.dumps(body).encode('utf-8'))

def make_client(responses: list[FakeResponse | Exception],
                environment: config.AppStoreEnvironment = config.AppStoreEnvironment.Sandbox,
                **overrides: typing.Any) -> tuple[platform_apple_api.Client, FakeHTTP]:
    apple_config = config.AppleConfig(key_id=TEST_KEY_ID,
                                      issuer_id=TEST_ISSUER_ID,
                                      subscription_key=TEST_KEY_B64,
                                      bundle_id=TEST_BUNDLE_ID,
                                      environment=environment)
    apple_config = dataclasses.replace(apple_config, **overrides)
    fake_http    = FakeHTTP(responses=responses)
    client       = platform_apple_api.init(apple_config, http_pool=typing.cast(urllib3.PoolManager, fake_http))
    return client, fake_http

def test_sign_token_claims_and_header():
    now_unix_ts_s = int(time.time())
    result        = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, TEST_KEY_B64, TEST_BUNDLE_ID, now_unix_ts_s=now_unix_ts_s)
    assert result.success, result.error
    assert isinstance(result.value, str)

    header = jwt.get_unverified_header(result.value)
    assert header['alg'] == 'ES256'
    assert header['kid'] == TEST_KEY_ID
    assert header['typ'] == 'JWT'

    claims = jwt.decode(result.value, TEST_PUBLIC_KEY, algorithms=['ES256'], audience='appstoreconnect-v1')
    assert claims['iss']                 == TEST_ISSUER_ID
    assert claims['aud']                 == 'appstoreconnect-v1'
    assert claims['bid']                 == TEST_BUNDLE_ID
    assert claims['iat']                 == now_unix_ts_s
    assert claims['exp'] - claims['iat'] == 60 * 60

def test_sign_token_defaults_to_current_time():
    before = int(time.time())
    result = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, TEST_KEY_B64, TEST_BUNDLE_ID)
    after  = int(time.time())
    assert result.value is not None

    claims = jwt.decode(result.value, TEST_PUBLIC_KEY, algorithms=['ES256'], audience='appstoreconnect-v1')
    assert before <= claims['iat'] <= after
    assert claims['exp'] == claims['iat'] + 3600

def test_sign_token_missing_fields():
    test_cases = [
        (('',          TEST_ISSUER_ID, TEST_KEY_B64), 'AppStoreServerApiKeyId'),
        ((TEST_KEY_ID, '',             TEST_KEY_B64), 'AppStoreServerApiIssuerId'),
        ((TEST_KEY_ID, TEST_ISSUER_ID, ''),           'AppStoreServerApiSubscriptionKey'),
        (('',          '',             ''),           'AppStoreServerApiKeyId'),
    ]

    for (key_id, issuer_id, private_key), field in test_cases:
        result = platform_apple_jwt.sign_token(key_id, issuer_id, private_key, TEST_BUNDLE_ID)
        assert not result.success
        assert result.error is not None
        assert result.error.kind  == APIErrorKind.InvalidConfiguration
        assert result.error.field == field
        assert field in result.error.msg

        with pytest.raises(InvalidConfigurationError) as excinfo:
            _ = result.unwrap()
        assert excinfo.value.field == field

def test_sign_token_empty_bundle_id_is_embedded():
    result = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, TEST_KEY_B64, '')
    assert result.value is not None
    claims = jwt.decode(result.value, TEST_PUBLIC_KEY, algorithms=['ES256'], audience='appstoreconnect-v1')
    assert claims['bid'] == ''

def test_sign_token_invalid_base64_fails_before_key_import(monkeypatch):
    def fail_import(*args, **kwargs):
        raise AssertionError('Key import must not be attempted for invalid base64')
    monkeypatch.setattr(platform_apple_jwt.serialization, 'load_der_private_key', fail_import)

    for private_key in ['not*base64!', 'abc', '   \n  ']:
        result = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, private_key, TEST_BUNDLE_ID)
        assert result.error is not None, private_key
        assert result.error.kind  == APIErrorKind.InvalidConfiguration
        assert result.error.field == 'AppStoreServerApiSubscriptionKey'

def test_sign_token_tolerates_wrapped_base64():
    # NOTE: Keys copied out of a .p8 file are usually wrapped at 64 columns
    wrapped = '\n'.join(TEST_KEY_B64[i:i + 64] for i in range(0, len(TEST_KEY_B64), 64))
    result  = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, wrapped + '\n', TEST_BUNDLE_ID)
    assert result.success, result.error
    assert result.value is not None
    _ = jwt.decode(result.value, TEST_PUBLIC_KEY, algorithms=['ES256'], audience='appstoreconnect-v1')

def test_sign_token_key_import_errors():
    p384_key_b64, _ = generate_key_b64(ec.SECP384R1())
    garbage_b64     = base64.b64encode(b'definitely not a pkcs8 key').decode('ascii')

    result = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, p384_key_b64, TEST_BUNDLE_ID)
    assert result.error is not None
    assert result.error.kind == APIErrorKind.KeyImport
    assert 'P-256' in result.error.msg

    result = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, garbage_b64, TEST_BUNDLE_ID)
    assert result.error is not None
    assert result.error.kind == APIErrorKind.KeyImport
    assert result.error.exception is not None
    with pytest.raises(KeyImportError) as excinfo:
        _ = result.unwrap()
    assert excinfo.value.__cause__ is result.error.exception

def test_sign_token_unknown_key_algorithm_is_key_import_error():
    # NOTE: Well-formed PKCS#8 PrivateKeyInfo whose algorithm OID (1.2.3.4) no library implements
    unknown_algorithm_der = bytes([0x30, 0x10,
                                   0x02, 0x01, 0x00,
                                   0x30, 0x05, 0x06, 0x03, 0x2A, 0x03, 0x04,
                                   0x04, 0x04, 0x01, 0x02, 0x03, 0x04])
    private_key = base64.b64encode(unknown_algorithm_der).decode('ascii')

    result = platform_apple_jwt.sign_token(TEST_KEY_ID, TEST_ISSUER_ID, private_key, TEST_BUNDLE_ID)
    assert result.error is not None
    assert result.error.kind      == APIErrorKind.KeyImport
    assert result.error.exception is not None

    client, fake_http = make_client(responses=[], subscription_key=private_key)
    api_result        = platform_apple_api.get_all_subscription_statuses(client, '2000000000000001')
    assert api_result.error is not None
    assert api_result.error.kind   == APIErrorKind.KeyImport
    assert len(fake_http.requests) == 0

def test_unsupported_method_issues_no_request():
    client, fake_http = make_client(responses=[])
    for method in ['PUT', 'DELETE', 'PATCH', 'get']:
        result = platform_apple_api.make_request(client, 'v1/subscriptions/1', method, parse_subscription_status_response)
        assert result.error is not None
        assert result.error.kind == APIErrorKind.UnsupportedMethod
        with pytest.raises(UnsupportedMethodError):
            _ = result.unwrap()
    assert len(fake_http.requests) == 0

    # NOTE: The method is rejected even before the credentials are looked at
    client, fake_http = make_client(responses=[], key_id='')
    result = platform_apple_api.make_request(client, 'v1/subscriptions/1', 'PUT', parse_subscription_status_response)
    assert result.error is not None
    assert result.error.kind == APIErrorKind.UnsupportedMethod

def test_invalid_configuration_issues_no_request():
    client, fake_http = make_client(responses=[], subscription_key='***')
    result            = platform_apple_api.get_all_subscription_statuses(client, '2000000000000001')
    assert result.error is not None
    assert result.error.kind  == APIErrorKind.InvalidConfiguration
    assert result.error.field == 'AppStoreServerApiSubscriptionKey'
    assert result.error.path  == 'v1/subscriptions/2000000000000001'
    assert len(fake_http.requests) == 0

def test_get_all_subscription_statuses_success():
    client, fake_http = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY)])
    result            = platform_apple_api.get_all_subscription_statuses(client, '2000000000000001')
    assert result.success, result.error

    expected = SubscriptionStatusResponse(
        environment=Environment.SANDBOX,
        app_apple_id=1234567890,
        bundle_id=TEST_BUNDLE_ID,
        data=[SubscriptionGroupIdentifierItem(subscription_group_identifier='21474837',
                                              last_transactions=[LastTransactionsItem(status=Status.ACTIVE,
                                                                                      original_transaction_id='2000000000000001',
                                                                                      signed_transaction_info='eyJhbGciOiJFUzI1NiJ9.tx.sig',
                                                                                      signed_renewal_info='eyJhbGciOiJFUzI1NiJ9.renewal.sig')])],
    )
    assert result.value == expected
    assert result.unwrap() == expected
    assert to_camel_case_json(result.value) == SUBSCRIPTION_STATUS_BODY

    assert len(fake_http.requests) == 1
    request = fake_http.requests[0]
    assert request.method == 'GET'
    assert request.url    == 'https://api.storekit-sandbox.itunes.apple.com/inApps/v1/subscriptions/2000000000000001'
    assert request.body   is None
    assert 'Content-Type' not in request.headers
    assert request.headers['Authorization'].startswith('Bearer ')

    token  = request.headers['Authorization'][len('Bearer '):]
    claims = jwt.decode(token, TEST_PUBLIC_KEY, algorithms=['ES256'], audience='appstoreconnect-v1')
    assert claims['iss'] == TEST_ISSUER_ID
    assert claims['bid'] == TEST_BUNDLE_ID

def test_token_is_signed_fresh_for_every_request(monkeypatch):
    signed: list[int] = []
    original_sign     = platform_apple_jwt.sign_token
    def counting_sign(*args, **kwargs):
        signed.append(1)
        return original_sign(*args, **kwargs)
    monkeypatch.setattr(platform_apple_jwt, 'sign_token', counting_sign)

    client, fake_http = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY), json_response(200, SUBSCRIPTION_STATUS_BODY)])
    _ = platform_apple_api.get_all_subscription_statuses(client, '1')
    _ = platform_apple_api.get_all_subscription_statuses(client, '1')
    assert len(signed)             == 2
    assert len(fake_http.requests) == 2

def test_vendor_error_response():
    client, _ = make_client(responses=[json_response(404, {'errorCode': 4040010, 'errorMessage': 'Transaction id not found'})])
    result    = platform_apple_api.get_all_subscription_statuses(client, 'bad-id')

    assert result.error is not None
    assert result.error.kind          == APIErrorKind.Vendor
    assert result.error.path          == 'v1/subscriptions/bad-id'
    assert result.error.http_status   == 404
    assert result.error.error_code    == 4040010
    assert result.error.error_message == 'Transaction id not found'

    with pytest.raises(AppStoreServerAPIException) as excinfo:
        _ = result.unwrap()
    assert excinfo.value.path                == 'v1/subscriptions/bad-id'
    assert excinfo.value.error.error_code    == 4040010
    assert excinfo.value.error.error_message == 'Transaction id not found'
    assert 'v1/subscriptions/bad-id' in str(excinfo.value)

class ListLogHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord):
        self.messages.append(record.getMessage())

def test_transaction_id_is_obfuscated_in_logs(monkeypatch):
    transaction_id = '2000000123456789'
    handler        = ListLogHandler()
    platform_apple_api.log.addHandler(handler)
    try:
        monkeypatch.setattr(base, 'UNSAFE_LOGGING', False)
        client, _ = make_client(responses=[json_response(404, {'errorCode': 4040010, 'errorMessage': 'Transaction id not found'}),
                                           FakeResponse(status=200, data=b'not json'),
                                           json_response(200, {'revision': 'rtok', 'hasMore': False, 'signedTransactions': []})])
        vendor_result = platform_apple_api.get_all_subscription_statuses(client, transaction_id)
        parse_result  = platform_apple_api.get_transaction_history(client, transaction_id)
        _             = platform_apple_api.get_transaction_history(client, transaction_id)

        assert len(handler.messages) > 0
        for msg in handler.messages:
            assert transaction_id not in msg, msg
        assert any(base.obfuscate(transaction_id) in msg for msg in handler.messages)

        # NOTE: Errors returned to the caller still carry the real endpoint
        assert vendor_result.error is not None and vendor_result.error.path == f'v1/subscriptions/{transaction_id}'
        assert parse_result.error  is not None and parse_result.error.path  == f'v2/history/{transaction_id}'
        assert transaction_id in vendor_result.error.msg

        handler.messages.clear()
        monkeypatch.setattr(base, 'UNSAFE_LOGGING', True)
        client, _ = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY)])
        _ = platform_apple_api.get_all_subscription_statuses(client, transaction_id)
        assert any(transaction_id in msg for msg in handler.messages)
    finally:
        platform_apple_api.log.removeHandler(handler)

def test_client_timeout_is_applied_to_every_request():
    client, fake_http = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY)], timeout_s=7.5)
    assert client.timeout_s == 7.5

    _ = platform_apple_api.get_all_subscription_statuses(client, '2000000000000001')
    assert fake_http.requests[0].timeout == 7.5

def test_unparseable_error_body_propagates_http_failure():
    test_cases = [
        FakeResponse(status=500, data=b'<html>Internal Server Error</html>'),
        FakeResponse(status=503, data=b''),
        json_response(401, {'message': 'Unauthenticated'}),
    ]

    for response in test_cases:
        client, _ = make_client(responses=[response])
        result    = platform_apple_api.get_all_subscription_statuses(client, 'bad-id')
        assert result.error is not None
        assert result.error.kind        == APIErrorKind.Transport
        assert result.error.http_status == response.status

        exception = result.error.exception
        assert isinstance(exception, platform_apple_api.HTTPStatusError)
        assert exception.status == response.status
        assert exception.body   == response.data

        with pytest.raises(platform_apple_api.HTTPStatusError) as excinfo:
            _ = result.unwrap()
        assert excinfo.value is exception

def test_network_failure_propagates_original_exception():
    failure   = urllib3.exceptions.ProtocolError('Connection aborted.')
    client, _ = make_client(responses=[failure])
    result    = platform_apple_api.get_transaction_history(client, '2000000000000001')

    assert result.error is not None
    assert result.error.kind      == APIErrorKind.Transport
    assert result.error.exception is failure
    with pytest.raises(urllib3.exceptions.ProtocolError) as excinfo:
        _ = result.unwrap()
    assert excinfo.value is failure

def test_empty_success_body_is_absent_result():
    for data in [b'', b'  \n']:
        client, _ = make_client(responses=[FakeResponse(status=200, data=data)])
        result    = platform_apple_api.get_notification_history(client, NotificationHistoryRequest(start_date=1, end_date=2))
        assert result.success, result.error
        assert result.value    is None
        assert result.unwrap() is None

def test_unexpected_success_body_is_transport_error():
    client, _ = make_client(responses=[json_response(200, {'bundleId': 5})])
    result    = platform_apple_api.get_all_subscription_statuses(client, '1')
    assert result.error is not None
    assert result.error.kind == APIErrorKind.Transport
    assert isinstance(result.error.exception, ResponseParseError)

    client, _ = make_client(responses=[FakeResponse(status=200, data=b'{not json')])
    result    = platform_apple_api.get_all_subscription_statuses(client, '1')
    assert result.error is not None
    assert result.error.kind == APIErrorKind.Transport
    assert isinstance(result.error.exception, ValueError)

def test_transaction_history_revision_query_parameter():
    body: base.JSONObject = {
        'revision':           'rtok2',
        'hasMore':            False,
        'bundleId':           TEST_BUNDLE_ID,
        'appAppleId':         1234567890,
        'environment':        'Production',
        'signedTransactions': ['jws.1', 'jws.2'],
    }
    client, fake_http = make_client(responses=[json_response(200, body), json_response(200, body)])

    result = platform_apple_api.get_transaction_history(client, '2000000000000001', '')
    assert result.value is not None
    assert result.value.signed_transactions == ['jws.1', 'jws.2']
    assert result.value.environment         == Environment.PRODUCTION
    assert fake_http.requests[0].url        == 'https://api.storekit-sandbox.itunes.apple.com/inApps/v2/history/2000000000000001'
    assert 'revision' not in fake_http.requests[0].url

    result = platform_apple_api.get_transaction_history(client, '2000000000000001', 'rtok')
    assert result.success
    assert fake_http.requests[1].url == 'https://api.storekit-sandbox.itunes.apple.com/inApps/v2/history/2000000000000001?revision=rtok'
    assert fake_http.requests[1].method == 'GET'

def test_notification_history_posts_camel_case_body():
    body: base.JSONObject = {
        'paginationToken': 'ptok2',
        'hasMore':         True,
        'notificationHistory': [
            {'signedPayload': 'jws.payload', 'sendAttempts': [{'attemptDate': 1698148900000, 'sendAttemptResult': 'SUCCESS'}]},
        ],
    }
    client, fake_http = make_client(responses=[json_response(200, body), json_response(200, body)])
    request           = NotificationHistoryRequest(start_date=1698148900000, end_date=1698148950000, only_failures=True)

    result = platform_apple_api.get_notification_history(client, request)
    assert result.value is not None
    assert result.value.pagination_token                                           == 'ptok2'
    assert result.value.has_more                                                   == True
    assert result.value.notification_history[0].send_attempts[0].send_attempt_result == 'SUCCESS'

    sent = fake_http.requests[0]
    assert sent.method                  == 'POST'
    assert sent.url                     == 'https://api.storekit-sandbox.itunes.apple.com/inApps/v1/notifications/history'
    assert sent.headers['Content-Type'] == 'application/json'
    assert sent.body is not None
    assert json.loads(sent.body)        == {'startDate': 1698148900000, 'endDate': 1698148950000, 'onlyFailures': True}

    _ = platform_apple_api.get_notification_history(client, request, 'ptok')
    assert fake_http.requests[1].url.endswith('/v1/notifications/history?paginationToken=ptok')

def test_query_parameters_keep_insertion_order_and_are_encoded():
    client, fake_http = make_client(responses=[FakeResponse(status=200, data=b'')])
    _ = platform_apple_api.make_request(client, 'v1/test', 'GET', parse_subscription_status_response,
                                        query_parameters={'b': '2', 'a': '1 2&3'})
    assert fake_http.requests[0].url.endswith('/v1/test?b=2&a=1%202%263')

def test_path_segment_is_percent_encoded():
    client, fake_http = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY)])
    _ = platform_apple_api.get_all_subscription_statuses(client, '../v2/x')
    assert fake_http.requests[0].url == 'https://api.storekit-sandbox.itunes.apple.com/inApps/v1/subscriptions/..%2Fv2%2Fx'

def test_environment_selects_base_url_only():
    sandbox_client,    sandbox_http    = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY)], environment=config.AppStoreEnvironment.Sandbox)
    production_client, production_http = make_client(responses=[json_response(200, SUBSCRIPTION_STATUS_BODY)], environment=config.AppStoreEnvironment.Production)

    _ = platform_apple_api.get_all_subscription_statuses(sandbox_client,    '2000000000000001')
    _ = platform_apple_api.get_all_subscription_statuses(production_client, '2000000000000001')

    sandbox_request    = sandbox_http.requests[0]
    production_request = production_http.requests[0]
    assert sandbox_request.url    == 'https://api.storekit-sandbox.itunes.apple.com/inApps/v1/subscriptions/2000000000000001'
    assert production_request.url == 'https://api.storekit.itunes.apple.com/inApps/v1/subscriptions/2000000000000001'

    assert sandbox_request.method == production_request.method
    assert sandbox_request.body   == production_request.body
    sandbox_headers    = {k: v for k, v in sandbox_request.headers.items()    if k != 'Authorization'}
    production_headers = {k: v for k, v in production_request.headers.items() if k != 'Authorization'}
    assert sandbox_headers == production_headers

def test_get_all_notification_history_follows_pagination():
    page_1: base.JSONObject = {'paginationToken': 'ptok', 'hasMore': True,  'notificationHistory': [{'signedPayload': 'jws.1', 'sendAttempts': []}]}
    page_2: base.JSONObject = {                            'hasMore': False, 'notificationHistory': [{'signedPayload': 'jws.2', 'sendAttempts': []}]}
    client, fake_http = make_client(responses=[json_response(200, page_1), json_response(200, page_2)])

    result = platform_apple_api.get_all_notification_history(client, NotificationHistoryRequest(start_date=1, end_date=2))
    assert result.value is not None
    assert [it.signed_payload for it in result.value] == ['jws.1', 'jws.2']
    assert len(fake_http.requests) == 2
    assert 'paginationToken' not in fake_http.requests[0].url
    assert fake_http.requests[1].url.endswith('?paginationToken=ptok')

def test_get_all_transaction_history_stops_on_error():
    page_1: base.JSONObject = {'revision': 'rtok', 'hasMore': True, 'bundleId': TEST_BUNDLE_ID, 'environment': 'Sandbox', 'signedTransactions': ['jws.1']}
    client, fake_http = make_client(responses=[json_response(200, page_1),
                                               json_response(429, {'errorCode': 4290000, 'errorMessage': 'Rate limit exceeded.'})])

    result = platform_apple_api.get_all_transaction_history(client, '2000000000000001')
    assert result.error is not None
    assert result.error.kind       == APIErrorKind.Vendor
    assert result.error.error_code == 4290000
    assert len(fake_http.requests) == 2
    assert fake_http.requests[1].url.endswith('?revision=rtok')

def test_get_all_transaction_history_single_page():
    page: base.JSONObject = {'revision': 'rtok', 'hasMore': False, 'bundleId': TEST_BUNDLE_ID, 'environment': 'Sandbox', 'signedTransactions': ['jws.1', 'jws.2']}
    client, fake_http = make_client(responses=[json_response(200, page)])

    result = platform_apple_api.get_all_transaction_history(client, '2000000000000001')
    assert result.value            == ['jws.1', 'jws.2']
    assert len(fake_http.requests) == 1

def test_parse_subscription_status_response_keeps_unknown_enum_values():
    err    = base.ErrorSink()
    body   = json.loads(json.dumps(SUBSCRIPTION_STATUS_BODY))
    body['data'][0]['lastTransactions'][0]['status'] = 6
    body['environment']                              = 'Staging'
    result = parse_subscription_status_response(body, err)
    assert not err.has(), err.build()
    assert result is not None
    assert result.environment                          == 'Staging'
    assert result.data[0].last_transactions[0].status  == 6
    assert not isinstance(result.data[0].last_transactions[0].status, Status)

    client, _  = make_client(responses=[json_response(200, body)])
    api_result = platform_apple_api.get_all_subscription_statuses(client, '2000000000000001')
    assert api_result.success, api_result.error

def test_parse_subscription_status_response_missing_optional_fields():
    err    = base.ErrorSink()
    result = parse_subscription_status_response({'data': []}, err)
    assert not err.has(), err.build()
    assert result == SubscriptionStatusResponse(environment=None, app_apple_id=None, bundle_id=None, data=[])

    err    = base.ErrorSink()
    result = parse_subscription_status_response({}, err)
    assert result is not None
    assert result.data == []

def test_parse_subscription_status_response_errors():
    err    = base.ErrorSink()
    body   = json.loads(json.dumps(SUBSCRIPTION_STATUS_BODY))
    body['data'][0]['lastTransactions'][0]['status'] = 'ACTIVE'
    body['environment']                              = 1
    result = parse_subscription_status_response(body, err)
    assert result is None
    assert len(err.msg_list) == 2, err.msg_list

    err    = base.ErrorSink()
    result = parse_subscription_status_response([], err)
    assert result is None
    assert err.has()

def test_parse_config_ini_then_environment(monkeypatch, tmp_path):
    for name in ['APP_STORE_API_KEY_ID', 'APP_STORE_API_ISSUER_ID', 'APP_STORE_API_SUBSCRIPTION_KEY', 'APP_STORE_API_BUNDLE_ID',
                 'APP_STORE_API_ENVIRONMENT', 'APP_STORE_API_TIMEOUT_S', 'APP_STORE_API_LOG_PATH', 'APP_STORE_API_UNSAFE_LOGGING']:
        monkeypatch.delenv(name, raising=False)

    ini_path = tmp_path / 'app-store-api.ini'
    ini_path.write_text('[base]\n'
                        'unsafe_logging = true\n'
                        '[apple]\n'
                        'key_id = INI_KEY\n'
                        'issuer_id = INI_ISSUER\n'
                        f'subscription_key = {TEST_KEY_B64}\n'
                        'bundle_id = com.example.ini\n'
                        'environment = Production\n'
                        'timeout_s = 12.5\n', encoding='utf-8')
    monkeypatch.setenv('APP_STORE_API_INI_PATH', str(ini_path))

    err    = base.ErrorSink()
    parsed = config.parse_config(err)
    assert not err.has(), err.msg_list
    assert parsed.unsafe_logging         == True
    assert parsed.log_path               == 'app-store-api.log'
    assert parsed.apple.key_id           == 'INI_KEY'
    assert parsed.apple.issuer_id        == 'INI_ISSUER'
    assert parsed.apple.subscription_key == TEST_KEY_B64
    assert parsed.apple.bundle_id        == 'com.example.ini'
    assert parsed.apple.environment      == config.AppStoreEnvironment.Production
    assert parsed.apple.timeout_s        == 12.5

    monkeypatch.setenv('APP_STORE_API_KEY_ID',      'ENV_KEY')
    monkeypatch.setenv('APP_STORE_API_ENVIRONMENT', 'Development')
    monkeypatch.setenv('APP_STORE_API_TIMEOUT_S',   '-1')
    err    = base.ErrorSink()
    parsed = config.parse_config(err)
    assert parsed.apple.key_id      == 'ENV_KEY'
    assert parsed.apple.issuer_id   == 'INI_ISSUER'
    assert parsed.apple.environment == config.AppStoreEnvironment.Sandbox
    assert parsed.apple.timeout_s   == 30.0
    assert len(err.msg_list)        == 1, err.msg_list

def test_parse_config_missing_ini(monkeypatch, tmp_path):
    monkeypatch.setenv('APP_STORE_API_INI_PATH', str(tmp_path / 'missing.ini'))
    err = base.ErrorSink()
    _   = config.parse_config(err)
    assert err.has()

def test_environment_from_str():
    assert config.environment_from_str('Production')  == config.AppStoreEnvironment.Production
    assert config.environment_from_str('production ') == config.AppStoreEnvironment.Production
    assert config.environment_from_str('Sandbox')     == config.AppStoreEnvironment.Sandbox
    assert config.environment_from_str('')            == config.AppStoreEnvironment.Sandbox
    assert platform_apple_api.base_url(config.AppStoreEnvironment.Production) == 'https://api.storekit.itunes.apple.com/inApps'
    assert platform_apple_api.base_url(config.AppStoreEnvironment.Sandbox)    == 'https://api.storekit-sandbox.itunes.apple.com/inApps'

def test_obfuscate():
    assert base.obfuscate('ab')               == 'ab'
    assert base.obfuscate('2000000000000001') == '2000…0001'
