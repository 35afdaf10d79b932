'''
Configuration for the App Store Server API client. Options are read from an optional .INI file and
then overridden by environment variables, in that order.

The resulting `AppleConfig` is passed explicitly to the client at construction. Nothing in the
client reads the process environment itself, the environment is consulted exactly once here.

Example .INI file:

    [base]
    log_path       = app-store-api.log
    unsafe_logging = false

    [apple]
    key_id           = 2X9R4HXF34
    issuer_id        = 57246542-96fe-1a63-e053-0824d011072a
    subscription_key = MIGTAgEAMBMGByqGSM49AgEGCCqGSM49AwEHBHkwdwIBAQQg...
    bundle_id        = com.example.app
    environment      = Sandbox
    timeout_s        = 30
'''

import configparser
import dataclasses
import enum
import os
import pathlib

import base

class AppStoreEnvironment(enum.Enum):
    Sandbox    = 0
    Production = 1

@dataclasses.dataclass
class AppleConfig:
    key_id:           str                 = '' # AppStoreServerApiKeyId, private key ID from App Store Connect
    issuer_id:        str                 = '' # AppStoreServerApiIssuerId, from the API Keys page
    subscription_key: str                 = '' # AppStoreServerApiSubscriptionKey, base64 PKCS#8 DER
    bundle_id:        str                 = '' # BundleId of the app
    environment:      AppStoreEnvironment = AppStoreEnvironment.Sandbox
    timeout_s:        float               = 30.0

@dataclasses.dataclass
class ParsedConfig:
    ini_path:       str         = ''
    log_path:       str         = ''
    unsafe_logging: bool        = False
    apple:          AppleConfig = dataclasses.field(default_factory=AppleConfig)

def environment_from_str(value: str) -> AppStoreEnvironment:
    """Only an explicit 'Production' selects the production API, everything else is the sandbox"""
    result = AppStoreEnvironment.Production if value.strip().lower() == 'production' else AppStoreEnvironment.Sandbox
    return result

def _parse_timeout(value: str, label: str, err: base.ErrorSink) -> float | None:
    result: float | None = None
    try:
        result = float(value)
    except ValueError:
        err.msg_list.append(f'{label} was not a number: "{value}"')
        return None

    if result <= 0:
        err.msg_list.append(f'{label} must be greater than 0, received {result}')
        result = None
    return result

def parse_config(err: base.ErrorSink) -> ParsedConfig:
    # NOTE: Parse .INI file if present and get arguments from it
    result          = ParsedConfig()
    result.ini_path = os.getenv('APP_STORE_API_INI_PATH', '')
    environment_str = ''
    timeout_str     = ''
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            err.msg_list.append(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            return result

        ini_parser = configparser.ConfigParser()
        try:
            _ = ini_parser.read(filenames=result.ini_path, encoding='utf-8')
        except configparser.Error as e:
            err.msg_list.append(f'.INI config file "{result.ini_path}" could not be parsed: {e}')
            return result

        if ini_parser.has_section('base'):
            base_section: configparser.SectionProxy = ini_parser['base']
            result.log_path                         = base_section.get(option='log_path', fallback='')
            try:
                result.unsafe_logging = base_section.getboolean(option='unsafe_logging', fallback=False)
            except ValueError as e:
                err.msg_list.append(f'[base] unsafe_logging is invalid: {e}')

        if ini_parser.has_section('apple'):
            apple_section: configparser.SectionProxy = ini_parser['apple']
            result.apple.key_id                      = apple_section.get(option='key_id',           fallback='')
            result.apple.issuer_id                   = apple_section.get(option='issuer_id',        fallback='')
            result.apple.subscription_key            = apple_section.get(option='subscription_key', fallback='')
            result.apple.bundle_id                   = apple_section.get(option='bundle_id',        fallback='')
            environment_str                          = apple_section.get(option='environment',      fallback='')
            timeout_str                              = apple_section.get(option='timeout_s',        fallback='')
        else:
            err.msg_list.append(f'.INI config file "{result.ini_path}" is missing the [apple] section')

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.apple.key_id           = os.getenv('APP_STORE_API_KEY_ID',           result.apple.key_id)
    result.apple.issuer_id        = os.getenv('APP_STORE_API_ISSUER_ID',        result.apple.issuer_id)
    result.apple.subscription_key = os.getenv('APP_STORE_API_SUBSCRIPTION_KEY', result.apple.subscription_key)
    result.apple.bundle_id        = os.getenv('APP_STORE_API_BUNDLE_ID',        result.apple.bundle_id)
    environment_str               = os.getenv('APP_STORE_API_ENVIRONMENT',      environment_str)
    timeout_str                   = os.getenv('APP_STORE_API_TIMEOUT_S',        timeout_str)
    result.log_path               = os.getenv('APP_STORE_API_LOG_PATH',         result.log_path)
    try:
        result.unsafe_logging = base.os_get_boolean_env('APP_STORE_API_UNSAFE_LOGGING', result.unsafe_logging)
    except ValueError as e:
        err.msg_list.append(str(e))

    result.apple.environment = environment_from_str(environment_str)
    if len(timeout_str) > 0:
        timeout_s = _parse_timeout(timeout_str, 'timeout_s', err)
        if timeout_s is not None:
            result.apple.timeout_s = timeout_s

    if len(result.log_path) == 0:
        result.log_path = 'app-store-api.log'

    return result
