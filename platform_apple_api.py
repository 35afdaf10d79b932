'''
Client for the App Store Server API.

  https://developer.apple.com/documentation/appstoreserverapi

Every call signs a fresh token, issues exactly one HTTP request and maps the response into an
`APIResult`. There is no caching of tokens or responses and failed calls are never retried, the
caller decides what to do with an error.
'''

import dataclasses
import http
import json
import logging
import typing
import urllib.parse

import urllib3

import base
import config
import platform_apple_jwt
from platform_apple_types import (
    APIError,
    APIErrorKind,
    APIResult,
    NotificationHistoryRequest,
    NotificationHistoryResponse,
    NotificationHistoryResponseItem,
    ResponseParseError,
    SubscriptionStatusResponse,
    TransactionHistoryResponse,
    parse_error_response,
    parse_notification_history_response,
    parse_subscription_status_response,
    parse_transaction_history_response,
    to_camel_case_json,
)

T = typing.TypeVar('T')

PRODUCTION_URL: str = 'https://api.storekit.itunes.apple.com/inApps'
SANDBOX_URL:    str = 'https://api.storekit-sandbox.itunes.apple.com/inApps'
USER_AGENT:     str = 'app-store-server-api/0.1'

log = logging.Logger('APPLE')

class HTTPStatusError(urllib3.exceptions.HTTPError):
    """A non-success response whose body was not the API's error shape"""
    def __init__(self, status: int, url: str, body: bytes):
        super().__init__(f'HTTP {status} from {url}')
        self.status = status
        self.url    = url
        self.body   = body

@dataclasses.dataclass
class Client:
    config:    config.AppleConfig
    # Connection pool used for every request, thread-safe. Tests substitute any object that has a
    # compatible `request` method.
    http:      urllib3.PoolManager
    timeout_s: float = 30.0 # Connect and read timeout applied to each request

def init(apple_config: config.AppleConfig, http_pool: urllib3.PoolManager | None = None) -> Client:
    if http_pool is None:
        http_pool = urllib3.PoolManager(timeout=urllib3.Timeout(connect=apple_config.timeout_s, read=apple_config.timeout_s),
                                        maxsize=10)
    result = Client(config=apple_config, http=http_pool, timeout_s=apple_config.timeout_s)
    return result

def base_url(environment: config.AppStoreEnvironment) -> str:
    result = PRODUCTION_URL if environment == config.AppStoreEnvironment.Production else SANDBOX_URL
    return result

def _quote_path_segment(segment: str) -> str:
    result = urllib.parse.quote(segment, safe='')
    return result

def _transport_error(path: str, msg: str, exception: BaseException, http_status: int = 0) -> APIError:
    result = APIError(kind=APIErrorKind.Transport, msg=msg, path=path, http_status=http_status, exception=exception)
    return result

def make_request(client:           Client,
                 path:             str,
                 method:           str,
                 parse:            typing.Callable[[base.JSONValue, base.ErrorSink], T | None],
                 query_parameters: dict[str, str] | None = None,
                 body:             typing.Any            = None,
                 log_path:         str                   = '') -> APIResult[T]:
    """
    Call the App Store Server API

    Args:
        path: Endpoint relative to the environment's base URL, e.g. 'v1/subscriptions/<id>'
        method: Only GET and POST are supported
        parse: Converts the decoded JSON body into the return type
        query_parameters: Appended to the URL in insertion order
        body: Dataclass serialised as camelCase JSON for POST requests
        log_path: What to print in place of `path` in the logs, set this when the path carries a
        transaction identifier. Errors always carry the real path.
    """
    log_label = log_path if log_path else path

    # NOTE: Reject the method before doing any signing or network activity
    if method != http.HTTPMethod.GET and method != http.HTTPMethod.POST:
        return APIResult(error=APIError(kind=APIErrorKind.UnsupportedMethod, msg=f'Method {method} not supported', path=path))

    token_result = platform_apple_jwt.sign_token(key_id=client.config.key_id,
                                                 issuer_id=client.config.issuer_id,
                                                 private_key=client.config.subscription_key,
                                                 bundle_id=client.config.bundle_id)
    if token_result.error is not None:
        token_result.error.path = path
        return APIResult(error=token_result.error)
    assert token_result.value is not None

    url = f'{base_url(client.config.environment)}/{path}'
    if query_parameters:
        url += '?' + urllib.parse.urlencode(list(query_parameters.items()), quote_via=urllib.parse.quote)

    headers: dict[str, str] = {
        'Authorization': f'Bearer {token_result.value}',
        'Accept':        'application/json',
        'User-Agent':    USER_AGENT,
    }

    request_body: bytes | None = None
    if method == http.HTTPMethod.POST:
        headers['Content-Type'] = 'application/json'
        request_body            = json.dumps(to_camel_case_json(body)).encode('utf-8')

    try:
        response = client.http.request(method=str(method), url=url, body=request_body, headers=headers,
                                       timeout=client.timeout_s, retries=False)
    except urllib3.exceptions.HTTPError as e:
        log.error(f'{method} {log_label} failed before a response was received: {base.safe_dump_arbitrary_value_or_type(e)}')
        return APIResult(error=_transport_error(path, f'Request to {path} failed: {e}', e))

    status: int   = response.status
    data:   bytes = response.data or b''
    log.info(f'{method} {log_label} -> {status} ({len(data)} bytes)')

    if status < 200 or status >= 300:
        error_response = None
        try:
            error_json = json.loads(data)
        except ValueError:
            error_json = None

        if error_json is not None:
            error_response = parse_error_response(error_json, base.ErrorSink())

        if error_response is not None:
            msg = (f'Error when calling App Store Server API for endpoint {path}. '
                   f'Received error code: {error_response.error_code}, Received error message: {error_response.error_message}')
            log.warning(msg.replace(path, log_label))
            return APIResult(error=APIError(kind=APIErrorKind.Vendor,
                                            msg=msg,
                                            path=path,
                                            http_status=status,
                                            error_code=error_response.error_code,
                                            error_message=error_response.error_message))

        # NOTE: The error was not in the expected format, hand back the original HTTP failure
        log.warning(f'{method} {log_label} returned HTTP {status} with an unrecognised body: {base.safe_dump_bytes(data)}')
        return APIResult(error=_transport_error(path, f'HTTP {status} from {path}', HTTPStatusError(status, url, data), status))

    # NOTE: Some endpoints legitimately respond without a body
    if len(data.strip()) == 0:
        return APIResult(value=None)

    try:
        response_json = json.loads(data)
    except ValueError as e:
        log.error(f'{method} {log_label} returned a body that is not JSON: {base.safe_dump_bytes(data)}')
        return APIResult(error=_transport_error(path, f'Response from {path} was not valid JSON: {e}', e, status))

    err   = base.ErrorSink()
    value = parse(response_json, err)
    if err.has() or value is None:
        msg = f'Response from {path} did not match the expected shape:\n  {err.build()}'
        log.error(msg.replace(path, log_label))
        return APIResult(error=_transport_error(path, msg, ResponseParseError(msg), status))

    return APIResult(value=value)

def get_all_subscription_statuses(client: Client, transaction_id: str) -> APIResult[SubscriptionStatusResponse]:
    """
    Get the statuses for all of a customer's auto-renewable subscriptions in your app, organized by
    their subscription group identifier.

      https://developer.apple.com/documentation/appstoreserverapi/get_all_subscription_statuses

    Args:
        transaction_id: Any transaction identifier that belongs to the customer, can be an original
        transaction identifier
    """
    log.info(f'Get all subscription statuses for {base.safe_obfuscate(transaction_id)}')
    path     = f'v1/subscriptions/{_quote_path_segment(transaction_id)}'
    log_path = f'v1/subscriptions/{base.safe_obfuscate(transaction_id)}'
    result   = make_request(client, path, http.HTTPMethod.GET, parse_subscription_status_response, log_path=log_path)
    return result

def get_notification_history(client: Client, request: NotificationHistoryRequest, pagination_token: str = '') -> APIResult[NotificationHistoryResponse]:
    """
    Get a list of notifications that the App Store server attempted to send to your server.

      https://developer.apple.com/documentation/appstoreserverapi/get_notification_history

    An empty pagination token requests the first page.
    """
    query_parameters: dict[str, str] = {}
    if pagination_token:
        query_parameters['paginationToken'] = pagination_token

    result = make_request(client, 'v1/notifications/history', http.HTTPMethod.POST, parse_notification_history_response,
                          query_parameters=query_parameters, body=request)
    return result

def get_transaction_history(client: Client, transaction_id: str, revision: str = '') -> APIResult[TransactionHistoryResponse]:
    """
    Get a customer's in-app purchase transaction history for your app.

      https://developer.apple.com/documentation/appstoreserverapi/get_transaction_history

    An empty revision requests the first page.
    """
    log.info(f'Get transaction history for {base.safe_obfuscate(transaction_id)}')
    query_parameters: dict[str, str] = {}
    if revision:
        query_parameters['revision'] = revision

    path     = f'v2/history/{_quote_path_segment(transaction_id)}'
    log_path = f'v2/history/{base.safe_obfuscate(transaction_id)}'
    result   = make_request(client, path, http.HTTPMethod.GET, parse_transaction_history_response,
                            query_parameters=query_parameters, log_path=log_path)
    return result

def get_all_notification_history(client: Client, request: NotificationHistoryRequest) -> APIResult[list[NotificationHistoryResponseItem]]:
    """
    Walk every page of the notification history for the request's date range. The first failing
    page ends the walk and its error is returned, items from earlier pages are discarded.
    """
    items:            list[NotificationHistoryResponseItem] = []
    pagination_token: str                                   = ''
    page_count:       int                                   = 0
    while True:
        page_result = get_notification_history(client, request, pagination_token)
        if page_result.error is not None:
            return APIResult(error=page_result.error)

        page_count += 1
        page        = page_result.value
        if page is None:
            break

        items.extend(page.notification_history)
        if not page.has_more:
            break

        if not page.pagination_token:
            log.warning(f'Notification history page {page_count} has more results but no pagination token, stopping')
            break
        pagination_token = page.pagination_token

    log.info(f'Retrieved {len(items)} notification(s) over {page_count} page(s)')
    return APIResult(value=items)

def get_all_transaction_history(client: Client, transaction_id: str) -> APIResult[list[str]]:
    """
    Walk every page of a customer's transaction history and return all the signed transactions
    (JWS). Same termination rules as `get_all_notification_history`.
    """
    signed_transactions: list[str] = []
    revision:            str       = ''
    page_count:          int       = 0
    while True:
        page_result = get_transaction_history(client, transaction_id, revision)
        if page_result.error is not None:
            return APIResult(error=page_result.error)

        page_count += 1
        page        = page_result.value
        if page is None:
            break

        signed_transactions.extend(page.signed_transactions)
        if not page.has_more:
            break

        if not page.revision:
            log.warning(f'Transaction history page {page_count} has more results but no revision, stopping')
            break
        revision = page.revision

    log.info(f'Retrieved {len(signed_transactions)} transaction(s) over {page_count} page(s)')
    return APIResult(value=signed_transactions)
