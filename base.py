'''
The base layer contains common utilities that are useful to the other files in the project and
should have no dependency on any project files, only, native Python packages. Typically useful to
share functionality between the testing suite and the client but not limited to.
'''
import datetime
import typing
import enum
import dataclasses
import logging
import math
import json
import os
import typing_extensions

# NOTE: Global variables
UNSAFE_LOGGING = False

# NOTE: Restricted type-set, JSON obviously supports much more than this, but
# our use-case only needs a small subset of it as of current so KISS.
JSONPrimitive: typing.TypeAlias = str | int | float | bool | None
JSONValue:     typing.TypeAlias = JSONPrimitive | dict[str, 'JSONValue'] | list['JSONValue']
JSONObject:    typing.TypeAlias = dict[str, JSONValue]
JSONArray:     typing.TypeAlias = list[JSONValue]

StrEnumT = typing.TypeVar('StrEnumT', bound=enum.StrEnum)
IntEnumT = typing.TypeVar('IntEnumT', bound=enum.IntEnum)

class LogFormatter(logging.Formatter):
    @typing_extensions.override
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None):
        dt     = datetime.datetime.fromtimestamp(record.created)
        result = dt.strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
        return result

@dataclasses.dataclass
class ErrorSink:
    '''
    Helper class to pass to functions that want to return error messages without unwinding the stack
    by using throwing exceptions.

    The typical pattern in that this construct is used is calling a sequence of functions that can
    error but have no dependency on each other. Errors are accumulated into the sink and checked at
    the end where it reports the error from the sink and returns a failure if there is one.

    See the response parsers in platform_apple_types.py for an example of where this is useful.
    '''
    msg_list: list[str] = dataclasses.field(default_factory=list)

    def has(self) -> bool:
        result = len(self.msg_list) > 0
        return result

    def build(self) -> str:
        result = '\n  '.join(self.msg_list)
        return result

def obfuscate(val: str) -> str:
    """
    Obfuscate a string by masking the contents preserving the prefix and suffix. If the string is
    less than 3 characters, the original string is retuned.
    """
    if len(val) < 3:
        return val
    n_ends = max(math.floor(len(val) * 0.3), 1)
    return f"{val[:n_ends]}…{val[-n_ends:]}"

def safe_obfuscate(val: str) -> str:
    """Return the value verbatim if UNSAFE_LOGGING is set, otherwise the obfuscated value"""
    result = val if UNSAFE_LOGGING else obfuscate(val)
    return result

def extract_keys_recursive(d: dict[str, typing.Any]) -> str:
    """
    Recursively extract keys from a nested dictionary and format them in the format:
    "key1, key2: {subkey1, subkey2}, key3: {subkey: {subsubkey}}"
    """
    result: list[str] = []
    for key, value in d.items():
        if isinstance(value, dict):
            result.append(f'{key}: {{{extract_keys_recursive(typing.cast(dict[str, typing.Any], value))}}}')
        else:
            result.append(key)
    return ', '.join(result)

def safe_dump_dict_keys_or_data(d: dict[str, typing.Any] | None) -> str:
    """Dump the dict or just the keys if UNSAFE_LOGGING is not set"""
    if d is None:
        return "None"
    if UNSAFE_LOGGING:
        return json.dumps(d)
    return "dictionary w/ keys: {" + extract_keys_recursive(d) + "}"

def safe_dump_arbitrary_value_or_type(v: typing.Any) -> str:  # pyright: ignore[reportAny]
    """Dump the value or just its type if UNSAFE_LOGGING is not set"""
    result = f'({type(v)}) {v}' if UNSAFE_LOGGING else f'{type(v)}'
    return result

def safe_dump_bytes(data: bytes, limit: int = 256) -> str:
    """Dump the (truncated) payload if UNSAFE_LOGGING is set, otherwise only its size"""
    if not UNSAFE_LOGGING:
        return f'<{len(data)} bytes>'
    text = data[:limit].decode('utf-8', errors='replace')
    if len(data) > limit:
        text += f'...({len(data)})'
    return text

def _json_dict_get(d: JSONObject, key: str, kind: type, kind_label: str, required: bool, err: ErrorSink) -> tuple[bool, JSONValue]:
    # NOTE: bool is a subclass of int in Python, an integer field must not silently accept a bool
    if key not in d:
        if required:
            err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
        return False, None

    value = d[key]
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        err.msg_list.append(f'Key "{key}" value was not {kind_label}: "{safe_dump_arbitrary_value_or_type(value)}"')
        return False, None
    return True, value

def json_dict_require_str(d: JSONObject, key: str, err: ErrorSink) -> str:
    found, value = _json_dict_get(d, key, str, 'a string', True, err)
    return typing.cast(str, value) if found else ''

def json_dict_require_int(d: JSONObject, key: str, err: ErrorSink) -> int:
    found, value = _json_dict_get(d, key, int, 'an integer', True, err)
    return typing.cast(int, value) if found else 0

def json_dict_optional_str(d: JSONObject, key: str, err: ErrorSink) -> str | None:
    found, value = _json_dict_get(d, key, str, 'a string', False, err)
    return typing.cast(str, value) if found else None

def json_dict_optional_int(d: JSONObject, key: str, err: ErrorSink) -> int | None:
    found, value = _json_dict_get(d, key, int, 'an integer', False, err)
    return typing.cast(int, value) if found else None

def json_dict_optional_bool(d: JSONObject, key: str, default: bool, err: ErrorSink) -> bool:
    found, value = _json_dict_get(d, key, bool, 'a bool', False, err)
    return typing.cast(bool, value) if found else default

def json_dict_optional_array(d: JSONObject, key: str, err: ErrorSink) -> JSONArray:
    found, value = _json_dict_get(d, key, list, 'an array', False, err)
    return typing.cast(JSONArray, value) if found else []

def json_dict_optional_str_coerce_to_enum(d: JSONObject, key: str, my_enum: type[StrEnumT], err: ErrorSink) -> StrEnumT | str | None:
    """Values the enum does not know are returned as the raw string"""
    found, value = _json_dict_get(d, key, str, 'a string', False, err)
    if not found:
        return None
    result = my_enum._value2member_map_.get(value, value)
    return typing.cast(StrEnumT | str, result)

def json_dict_require_int_coerce_to_enum(d: JSONObject, key: str, my_enum: type[IntEnumT], err: ErrorSink) -> IntEnumT | int | None:
    """Values the enum does not know are returned as the raw integer, None if the key is missing"""
    found, value = _json_dict_get(d, key, int, 'an integer', True, err)
    if not found:
        return None
    result = my_enum._value2member_map_.get(value, value)
    return typing.cast(IntEnumT | int, result)

def json_array_require_objs(items: JSONArray, label: str, err: ErrorSink) -> list[JSONObject]:
    result: list[JSONObject] = []
    for index, item in enumerate(items):
        if isinstance(item, dict):
            result.append(item)
        else:
            err.msg_list.append(f'{label} item at index {index} not an object: {safe_dump_arbitrary_value_or_type(item)}')
    return result

def json_array_require_strs(items: JSONArray, label: str, err: ErrorSink) -> list[str]:
    result: list[str] = []
    for index, item in enumerate(items):
        if isinstance(item, str):
            result.append(item)
        else:
            err.msg_list.append(f'{label} item at index {index} not a string: {safe_dump_arbitrary_value_or_type(item)}')
    return result

def os_get_boolean_env(var_name: str, default: bool = False):
    value = os.getenv(var_name, str(int(default)))  # Default to 0 or 1
    if value == '1':
        return True
    elif value == '0':
        return False
    else:
        raise ValueError(f"Invalid value for environment variable '{var_name}': {value}. Allowed values are 0 or 1.")
