'''
Type definitions for data structures exchanged with the App Store Server API and the error types
returned by the client.

The API speaks JSON with camelCase field names, the Python side uses snake_case dataclasses. The
parsers here convert between the two, accumulating any problems into a `base.ErrorSink` and
returning `None` on failure instead of raising.
'''

import dataclasses
import enum
import typing

import base

T = typing.TypeVar('T')

class APIErrorKind(enum.Enum):
    Nil                  = 0
    InvalidConfiguration = 1 # A credential is missing or malformed, detected before any network call
    KeyImport            = 2 # The private key bytes do not form an ES256 (P-256) PKCS#8 key
    UnsupportedMethod    = 3 # HTTP verb other than GET or POST was requested
    Vendor               = 4 # Non-success HTTP response with a parseable ErrorResponse body
    Transport            = 5 # Network failure, unexpected error shape or an unreadable response

class InvalidConfigurationError(ValueError):
    def __init__(self, field: str, msg: str):
        super().__init__(msg)
        self.field = field

class KeyImportError(ValueError):
    pass

class UnsupportedMethodError(NotImplementedError):
    pass

class ResponseParseError(ValueError):
    pass

@dataclasses.dataclass
class ErrorResponse:
    error_code:    int = 0
    error_message: str = ''

class AppStoreServerAPIException(Exception):
    def __init__(self, path: str, error: ErrorResponse, http_status: int = 0):
        super().__init__(f'Error when calling App Store Server API for endpoint {path}. '
                         f'Received error code: {error.error_code}, Received error message: {error.error_message}')
        self.path        = path
        self.error       = error
        self.http_status = http_status

@dataclasses.dataclass
class APIError:
    kind:          APIErrorKind         = APIErrorKind.Nil
    msg:           str                  = ''
    field:         str                  = '' # Configuration field name for InvalidConfiguration
    path:          str                  = '' # Endpoint path relative to the base URL
    http_status:   int                  = 0
    error_code:    int                  = 0  # Vendor's errorCode for Vendor errors
    error_message: str                  = '' # Vendor's errorMessage for Vendor errors
    exception:     BaseException | None = None

@dataclasses.dataclass
class APIResult(typing.Generic[T]):
    '''
    Outcome of a call into the client. Exactly one of `value` or `error` is meaningful, `value` can
    legitimately be `None` on success when the API responded with an empty body.

    Callers either branch on `error.kind` or call `unwrap()` to get exception semantics back.
    '''
    value: T | None        = None
    error: APIError | None = None

    @property
    def success(self) -> bool:
        result = self.error is None
        return result

    def unwrap(self) -> T | None:
        if self.error is None:
            return self.value

        error = self.error
        match error.kind:
            case APIErrorKind.InvalidConfiguration:
                raise InvalidConfigurationError(error.field, error.msg)
            case APIErrorKind.KeyImport:
                raise KeyImportError(error.msg) from error.exception
            case APIErrorKind.UnsupportedMethod:
                raise UnsupportedMethodError(error.msg)
            case APIErrorKind.Vendor:
                raise AppStoreServerAPIException(path=error.path,
                                                 error=ErrorResponse(error_code=error.error_code, error_message=error.error_message),
                                                 http_status=error.http_status)
            case APIErrorKind.Transport:
                # NOTE: Re-raise the original failure as-is so its diagnostics are preserved
                if error.exception is not None:
                    raise error.exception
                raise RuntimeError(error.msg)
            case APIErrorKind.Nil:
                pass
        raise RuntimeError(f'Unhandled API error kind {error.kind}: {error.msg}')

class Environment(enum.StrEnum):
    SANDBOX       = 'Sandbox'
    PRODUCTION    = 'Production'
    XCODE         = 'Xcode'
    LOCAL_TESTING = 'LocalTesting'

class Status(enum.IntEnum):
    """The status of an auto-renewable subscription"""
    ACTIVE               = 1
    EXPIRED              = 2
    BILLING_RETRY        = 3 # The subscription is in the billing retry period
    BILLING_GRACE_PERIOD = 4
    REVOKED              = 5

@dataclasses.dataclass
class LastTransactionsItem:
    status:                  Status | int # Raw integer when Apple reports a status newer than this enum
    original_transaction_id: str
    signed_transaction_info: str # JWS, signed by the App Store
    signed_renewal_info:     str # JWS, signed by the App Store

@dataclasses.dataclass
class SubscriptionGroupIdentifierItem:
    subscription_group_identifier: str
    last_transactions:             list[LastTransactionsItem]

@dataclasses.dataclass
class SubscriptionStatusResponse:
    environment:  Environment | str | None # Raw string for an environment newer than this enum
    app_apple_id: int | None # Not present in the sandbox environment
    bundle_id:    str | None
    data:         list[SubscriptionGroupIdentifierItem]

@dataclasses.dataclass
class NotificationHistoryRequest:
    # Both dates are UNIX timestamps in milliseconds. The start date must be within the past 180 days.
    start_date:           int
    end_date:             int
    notification_type:    str | None  = None
    notification_subtype: str | None  = None
    transaction_id:       str | None  = None
    only_failures:        bool | None = None

@dataclasses.dataclass
class SendAttemptItem:
    attempt_date:        int
    send_attempt_result: str

@dataclasses.dataclass
class NotificationHistoryResponseItem:
    signed_payload: str
    send_attempts:  list[SendAttemptItem]

@dataclasses.dataclass
class NotificationHistoryResponse:
    pagination_token:     str | None
    has_more:             bool
    notification_history: list[NotificationHistoryResponseItem]

@dataclasses.dataclass
class TransactionHistoryResponse:
    revision:            str | None
    has_more:            bool
    bundle_id:           str | None
    app_apple_id:        int | None
    environment:         Environment | str | None
    signed_transactions: list[str]

def snake_to_camel_case(name: str) -> str:
    head, *tail = name.split('_')
    result      = head + ''.join(part[:1].upper() + part[1:] for part in tail)
    return result

def to_camel_case_json(obj: typing.Any) -> base.JSONValue:  # pyright: ignore[reportAny]
    """
    Convert a dataclass (recursively) to a JSON value with camelCase keys. Fields set to `None` are
    omitted as the API treats absent and null differently for optional filters.
    """
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        result: base.JSONObject = {}
        for field in dataclasses.fields(obj):
            value = getattr(obj, field.name)
            if value is not None:
                result[snake_to_camel_case(field.name)] = to_camel_case_json(value)
        return result
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, (list, tuple)):
        return [to_camel_case_json(it) for it in obj]
    if isinstance(obj, dict):
        return {str(k): to_camel_case_json(v) for k, v in obj.items()}
    return obj

def parse_error_response(obj: base.JSONValue, err: base.ErrorSink) -> ErrorResponse | None:
    result = None
    if not isinstance(obj, dict):
        err.msg_list.append(f'Error response is not an object: {base.safe_dump_arbitrary_value_or_type(obj)}')
        return result

    error_code    = base.json_dict_require_int(obj, 'errorCode', err)
    error_message = base.json_dict_optional_str(obj, 'errorMessage', err)
    if not err.has():
        result = ErrorResponse(error_code=error_code, error_message=error_message or '')
    return result

def parse_subscription_status_response(obj: base.JSONValue, err: base.ErrorSink) -> SubscriptionStatusResponse | None:
    result = None
    if not isinstance(obj, dict):
        err.msg_list.append(f'Subscription status response is not an object: {base.safe_dump_arbitrary_value_or_type(obj)}')
        return result

    environment  = base.json_dict_optional_str_coerce_to_enum(obj, 'environment', Environment, err)
    app_apple_id = base.json_dict_optional_int(obj, 'appAppleId', err)
    bundle_id    = base.json_dict_optional_str(obj, 'bundleId', err)
    data_arr     = base.json_dict_optional_array(obj, 'data', err)

    data: list[SubscriptionGroupIdentifierItem] = []
    for group_obj in base.json_array_require_objs(data_arr, 'data', err):
        group_id = base.json_dict_require_str(group_obj, 'subscriptionGroupIdentifier', err)
        last_arr = base.json_dict_optional_array(group_obj, 'lastTransactions', err)

        last_transactions: list[LastTransactionsItem] = []
        for tx_obj in base.json_array_require_objs(last_arr, 'lastTransactions', err):
            status                  = base.json_dict_require_int_coerce_to_enum(tx_obj, 'status', Status, err)
            original_transaction_id = base.json_dict_require_str(tx_obj, 'originalTransactionId', err)
            signed_transaction_info = base.json_dict_require_str(tx_obj, 'signedTransactionInfo', err)
            signed_renewal_info     = base.json_dict_require_str(tx_obj, 'signedRenewalInfo', err)
            if status is not None:
                last_transactions.append(LastTransactionsItem(status=status,
                                                              original_transaction_id=original_transaction_id,
                                                              signed_transaction_info=signed_transaction_info,
                                                              signed_renewal_info=signed_renewal_info))

        data.append(SubscriptionGroupIdentifierItem(subscription_group_identifier=group_id,
                                                    last_transactions=last_transactions))

    if not err.has():
        result = SubscriptionStatusResponse(environment=environment,
                                            app_apple_id=app_apple_id,
                                            bundle_id=bundle_id,
                                            data=data)

    assert result is None if err.has() else isinstance(result, SubscriptionStatusResponse)
    return result

def parse_notification_history_response(obj: base.JSONValue, err: base.ErrorSink) -> NotificationHistoryResponse | None:
    result = None
    if not isinstance(obj, dict):
        err.msg_list.append(f'Notification history response is not an object: {base.safe_dump_arbitrary_value_or_type(obj)}')
        return result

    pagination_token = base.json_dict_optional_str(obj, 'paginationToken', err)
    has_more         = base.json_dict_optional_bool(obj, 'hasMore', False, err)
    history_arr      = base.json_dict_optional_array(obj, 'notificationHistory', err)

    history: list[NotificationHistoryResponseItem] = []
    for item_obj in base.json_array_require_objs(history_arr, 'notificationHistory', err):
        signed_payload = base.json_dict_require_str(item_obj, 'signedPayload', err)
        attempts_arr   = base.json_dict_optional_array(item_obj, 'sendAttempts', err)

        send_attempts: list[SendAttemptItem] = []
        for attempt_obj in base.json_array_require_objs(attempts_arr, 'sendAttempts', err):
            send_attempts.append(SendAttemptItem(attempt_date=base.json_dict_require_int(attempt_obj, 'attemptDate', err),
                                                 send_attempt_result=base.json_dict_require_str(attempt_obj, 'sendAttemptResult', err)))

        history.append(NotificationHistoryResponseItem(signed_payload=signed_payload, send_attempts=send_attempts))

    if not err.has():
        result = NotificationHistoryResponse(pagination_token=pagination_token,
                                             has_more=has_more,
                                             notification_history=history)
    return result

def parse_transaction_history_response(obj: base.JSONValue, err: base.ErrorSink) -> TransactionHistoryResponse | None:
    result = None
    if not isinstance(obj, dict):
        err.msg_list.append(f'Transaction history response is not an object: {base.safe_dump_arbitrary_value_or_type(obj)}')
        return result

    revision            = base.json_dict_optional_str(obj, 'revision', err)
    has_more            = base.json_dict_optional_bool(obj, 'hasMore', False, err)
    bundle_id           = base.json_dict_optional_str(obj, 'bundleId', err)
    app_apple_id        = base.json_dict_optional_int(obj, 'appAppleId', err)
    environment         = base.json_dict_optional_str_coerce_to_enum(obj, 'environment', Environment, err)
    signed_transactions = base.json_array_require_strs(base.json_dict_optional_array(obj, 'signedTransactions', err), 'signedTransactions', err)

    if not err.has():
        result = TransactionHistoryResponse(revision=revision,
                                            has_more=has_more,
                                            bundle_id=bundle_id,
                                            app_apple_id=app_apple_id,
                                            environment=environment,
                                            signed_transactions=signed_transactions)
    return result
