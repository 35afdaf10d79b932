'''
Command line entry point for the App Store Server API client. Loads the configuration from the
.INI file and environment variables (see config.py), sets up logging, runs a single lookup and
prints the result as JSON to standard out.

  python main.py subscriptions <transaction_id>
  python main.py transactions  <transaction_id> [--revision R] [--all]
  python main.py notifications --start-ms S --end-ms E [--pagination-token T] [--all]

Credentials are never accepted on the command line so they don't end up in shell history, they
must be specified in the .INI file or as environment variables.
'''

import argparse
import json
import logging
import logging.handlers
import sys
import typing

import base
import config
import platform_apple_api
import platform_apple_jwt
from platform_apple_types import APIResult, NotificationHistoryRequest, to_camel_case_json

log = logging.Logger('MAIN')

def build_arg_parser() -> argparse.ArgumentParser:
    result     = argparse.ArgumentParser(description='Query the App Store Server API')
    subparsers = result.add_subparsers(dest='command', required=True)

    subscriptions = subparsers.add_parser('subscriptions', help='Get all subscription statuses for a transaction')
    subscriptions.add_argument('transaction_id')

    transactions = subparsers.add_parser('transactions', help='Get the transaction history for a transaction')
    transactions.add_argument('transaction_id')
    transactions.add_argument('--revision', default='', help='Revision token from a previous page')
    transactions.add_argument('--all',      action='store_true', help='Follow revisions until every page is retrieved')

    notifications = subparsers.add_parser('notifications', help='Get the notification history for a date range')
    notifications.add_argument('--start-ms',         type=int, required=True, help='Start of the range, UNIX timestamp in milliseconds')
    notifications.add_argument('--end-ms',           type=int, required=True, help='End of the range, UNIX timestamp in milliseconds')
    notifications.add_argument('--pagination-token', default='')
    notifications.add_argument('--transaction-id',   default=None)
    notifications.add_argument('--only-failures',    action='store_true')
    notifications.add_argument('--all',              action='store_true', help='Follow pagination tokens until every page is retrieved')
    return result

def setup_logging(log_path: str) -> None:
    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler(stream=sys.stderr)
    console_logger.setFormatter(log_formatter)

    file_logger = logging.handlers.RotatingFileHandler(filename=log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)

    for it in (log, platform_apple_api.log, platform_apple_jwt.log):
        it.addHandler(console_logger)
        it.addHandler(file_logger)

def run_command(args: argparse.Namespace, client: platform_apple_api.Client) -> APIResult[typing.Any]:
    result: APIResult[typing.Any] = APIResult()
    match args.command:
        case 'subscriptions':
            result = platform_apple_api.get_all_subscription_statuses(client, args.transaction_id)
        case 'transactions':
            if args.all:
                result = platform_apple_api.get_all_transaction_history(client, args.transaction_id)
            else:
                result = platform_apple_api.get_transaction_history(client, args.transaction_id, args.revision)
        case 'notifications':
            request = NotificationHistoryRequest(start_date=args.start_ms,
                                                 end_date=args.end_ms,
                                                 transaction_id=args.transaction_id,
                                                 only_failures=True if args.only_failures else None)
            if args.all:
                result = platform_apple_api.get_all_notification_history(client, request)
            else:
                result = platform_apple_api.get_notification_history(client, request, args.pagination_token)
    return result

def entry_point(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup globals
    err                         = base.ErrorSink()
    parsed: config.ParsedConfig = config.parse_config(err)
    base.UNSAFE_LOGGING         = parsed.unsafe_logging
    setup_logging(parsed.log_path)
    if err.has():
        log.error(f'Failed to startup, invalid configuration options:\n  {err.build()}')
        return 1

    if parsed.unsafe_logging:
        log.warning('Unsafe logging enabled (this must NOT be used in production)')

    label = 'Production' if parsed.apple.environment == config.AppStoreEnvironment.Production else 'Sandbox'
    log.info(f'Using the {label} App Store Server API ({platform_apple_api.base_url(parsed.apple.environment)})')

    client = platform_apple_api.init(parsed.apple)
    result = run_command(args, client)
    if result.error is not None:
        log.error(f'{args.command} failed ({result.error.kind.name}): {result.error.msg}')
        return 1

    print(json.dumps(to_camel_case_json(result.value), indent=2))
    return 0

if __name__ == '__main__':
    sys.exit(entry_point())
