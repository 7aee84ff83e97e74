#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.9"
# dependencies = [
#     "requests>=2.32.0",
#     "tabulate>=0.9.0",
#     "pyyaml>=6.0.1",
# ]
# ///
"""Interledger node administration CLI.

Translates a command invocation into a single HTTP request against the REST
API of an Interledger node (accounts, payments, rates, routes, settlement
engines) and prints the node's response.

Usage examples:
    ./scripts/ilp_cli.py status
    ./scripts/ilp_cli.py accounts create alice --auth admin-token --asset-code ABC --asset-scale 9
    ./scripts/ilp_cli.py --format json accounts balance alice --auth alice-token
    ./scripts/ilp_cli.py pay alice --auth alice-token --amount 500 --to http://localhost:7770/accounts/bob/spsp
    ./scripts/ilp_cli.py --dry-run rates set-all --auth admin-token --pair ABC 1 XYZ 2
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple
from urllib.parse import quote

import requests
from tabulate import tabulate

# Prevent BrokenPipeError when piping output
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_DFL)

DEFAULT_NODE_URL = "http://localhost:7770"
DEFAULT_ENV_FILE = Path(".env")

AUTH_ARG = "authorization_key"
PAIRS_ARG = "halve"

BODY_NONE = "none"
BODY_JSON = "json"
BODY_RAW = "raw"

RawArguments = Dict[str, List[str]]
ArgumentSet = Dict[str, str]


class CliError(Exception):
    """Exit code 1: the invocation could not be turned into a request or sent."""

    exit_code = 1


class UsageError(CliError):
    def __init__(self, hint: str):
        super().__init__(f"invalid command usage. Try `{hint}`")
        self.hint = hint


class MissingAuthToken(CliError):
    def __init__(self) -> None:
        super().__init__("missing authorization token. Pass --auth or set ILP_CLI_API_AUTH.")


class MissingArgument(CliError):
    def __init__(self, name: str):
        super().__init__(f"missing required argument `{name}`")
        self.name = name


class UnsupportedCommand(CliError):
    pass


class TransportError(CliError):
    pass


class UnrecognizedCommand(Exception):
    """The argument parser accepted a command that has no dispatch entry.

    Not a user mistake: the parser and the COMMANDS table have drifted apart.
    """

    exit_code = 70

    def __init__(self, path: "CommandPath"):
        super().__init__(f"no handler registered for `{path}`")
        self.path = path


@dataclass
class AppConfig:
    node_url: str = DEFAULT_NODE_URL
    env_file: Path = DEFAULT_ENV_FILE
    debug: bool = False
    quiet: bool = False
    output_format: str = "raw"
    request_timeout: float = 30.0
    dry_run: bool = False


@dataclass(frozen=True)
class CommandPath:
    category: Optional[str]
    action: Optional[str] = None

    def __str__(self) -> str:
        return " ".join(part for part in ("ilp-cli", self.category, self.action) if part)


@dataclass(frozen=True)
class RequestSpec:
    method: str
    url: str
    bearer_token: Optional[str] = None
    body_kind: str = BODY_NONE
    body: Any = None

    def preview(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "authorization": f"Bearer {mask_token(self.bearer_token)}" if self.bearer_token is not None else None,
            "body_kind": self.body_kind,
            "body": self.body,
        }


class PaymentSubscription(Protocol):
    """Streaming feed of payments received by an account.

    A long-lived subscription rather than a one-shot request, so it never goes
    through RequestSpec. No implementation ships with this tool.
    """

    def subscribe(self, username: str, token: str) -> Iterator[Dict[str, Any]]:
        ...


def mask_token(token: Optional[str]) -> str:
    if not token:
        return ""
    # pay tokens look like "user:secret"; keep the user visible
    user, sep, _ = token.rpartition(":")
    return f"{user}{sep}****" if sep else "****"


def load_env_file(path: Path) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if not path.exists():
        return env
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        env[key.strip()] = value.strip()
    return env


def load_config(
    env_path: Path,
    node_url: Optional[str] = None,
    *,
    debug: bool = False,
    quiet: bool = False,
    output_format: str = "raw",
    request_timeout: float = 30.0,
    dry_run: bool = False,
) -> Tuple[AppConfig, Dict[str, str]]:
    env_lookup = {**load_env_file(env_path), **os.environ}
    config = AppConfig(
        node_url=(node_url or env_lookup.get("ILP_CLI_NODE_URL") or DEFAULT_NODE_URL).rstrip("/"),
        env_file=env_path,
        debug=debug,
        quiet=quiet,
        output_format=output_format,
        request_timeout=request_timeout,
        dry_run=dry_run,
    )
    return config, env_lookup


# Argument extraction


def extract_args(raw: RawArguments) -> Tuple[str, ArgumentSet]:
    """Split the first value of every argument into (auth token, remaining args).

    Arguments captured without a value (plain flags such as ``overwrite``) are
    left out of the returned map.
    """
    args = {name: str(values[0]) for name, values in raw.items() if values}
    if AUTH_ARG not in args:
        raise MissingAuthToken()
    auth = args.pop(AUTH_ARG)
    return auth, args


def _pair_windows(halves: List[str]) -> Iterator[Tuple[str, str]]:
    # Non-overlapping windows from index 0; an odd trailing token is dropped.
    for i in range(0, len(halves) - 1, 2):
        yield halves[i], halves[i + 1]


def unflatten_pairs(raw: RawArguments, config: Optional[AppConfig] = None) -> Tuple[str, ArgumentSet]:
    """Rebuild a key/value map from the flat ``--pair K V ...`` token list."""
    auth_values = raw.get(AUTH_ARG)
    if not auth_values:
        raise MissingAuthToken()
    halves = [str(value) for value in raw.get(PAIRS_ARG, [])]
    pairs = dict(_pair_windows(halves))
    if len(halves) % 2 and config is not None and config.debug:
        print(f"Ignoring unpaired trailing value {halves[-1]!r}", file=sys.stderr)
    return str(auth_values[0]), pairs


def require_arg(args: ArgumentSet, name: str) -> str:
    try:
        return args[name]
    except KeyError:
        raise MissingArgument(name) from None


def take_arg(args: ArgumentSet, name: str) -> str:
    value = require_arg(args, name)
    del args[name]
    return value


# Request assembly


def build_request(
    config: AppConfig,
    method: str,
    template: str,
    path_params: Optional[Dict[str, str]] = None,
    *,
    auth: Optional[str] = None,
    json_body: Optional[Dict[str, Any]] = None,
    raw_body: Optional[str] = None,
) -> RequestSpec:
    if json_body is not None and raw_body is not None:
        raise ValueError("A request carries either a JSON body or a raw body, not both")
    encoded = {name: quote(value, safe="") for name, value in (path_params or {}).items()}
    url = config.node_url.rstrip("/") + template.format(**encoded)
    if json_body is not None:
        return RequestSpec(method, url, auth, BODY_JSON, dict(json_body))
    if raw_body is not None:
        return RequestSpec(method, url, auth, BODY_RAW, raw_body)
    return RequestSpec(method, url, auth)


# Handlers for subcommands


def handle_accounts_balance(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    user = take_arg(args, "username")
    return build_request(config, "GET", "/accounts/{username}/balance", {"username": user}, auth=auth)


def handle_accounts_create(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    if "overwrite" in raw:
        return build_request(config, "PUT", "/accounts", auth=auth, json_body=args)
    user = require_arg(args, "username")
    return build_request(config, "POST", "/accounts/{username}", {"username": user}, auth=auth, json_body=args)


def handle_accounts_delete(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    user = require_arg(args, "username")
    return build_request(config, "DELETE", "/accounts/{username}", {"username": user}, auth=auth)


def handle_accounts_incoming_payments(raw: RawArguments, config: AppConfig) -> RequestSpec:
    raise UnsupportedCommand(
        "`accounts incoming-payments` needs a streaming subscription and is not supported by this client"
    )


def handle_accounts_info(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    user = require_arg(args, "username")
    return build_request(config, "GET", "/accounts/{username}", {"username": user}, auth=auth)


def handle_accounts_list(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, _ = extract_args(raw)
    return build_request(config, "GET", "/accounts", auth=auth)


def handle_accounts_update(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    user = take_arg(args, "username")
    template = "/accounts/{username}" if "is_admin" in raw else "/accounts/{username}/settings"
    return build_request(config, "PUT", template, {"username": user}, auth=auth, json_body=args)


def handle_pay(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    user = take_arg(args, "sender_username")
    return build_request(
        config,
        "POST",
        "/accounts/{username}/payments",
        {"username": user},
        auth=f"{user}:{auth}",
        json_body=args,
    )


def handle_rates_list(raw: RawArguments, config: AppConfig) -> RequestSpec:
    return build_request(config, "GET", "/rates")


def handle_rates_set_all(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, rate_pairs = unflatten_pairs(raw, config)
    return build_request(config, "PUT", "/rates", auth=auth, json_body=rate_pairs)


def handle_routes_list(raw: RawArguments, config: AppConfig) -> RequestSpec:
    return build_request(config, "GET", "/routes")


def handle_routes_set(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, args = extract_args(raw)
    prefix = require_arg(args, "prefix")
    destination = require_arg(args, "destination")
    return build_request(
        config, "PUT", "/routes/static/{prefix}", {"prefix": prefix}, auth=auth, raw_body=destination
    )


def handle_routes_set_all(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, route_pairs = unflatten_pairs(raw, config)
    return build_request(config, "PUT", "/routes/static", auth=auth, json_body=route_pairs)


def handle_settlement_engines_set_all(raw: RawArguments, config: AppConfig) -> RequestSpec:
    auth, engine_pairs = unflatten_pairs(raw, config)
    return build_request(config, "PUT", "/settlement/engines", auth=auth, json_body=engine_pairs)


def handle_status(raw: RawArguments, config: AppConfig) -> RequestSpec:
    return build_request(config, "GET", "/")


# Dispatch

Handler = Callable[[RawArguments, AppConfig], RequestSpec]

# Categories without a second level are keyed by None.
COMMANDS: Dict[str, Dict[Optional[str], Handler]] = {
    "accounts": {
        "balance": handle_accounts_balance,
        "create": handle_accounts_create,
        "delete": handle_accounts_delete,
        "incoming-payments": handle_accounts_incoming_payments,
        "info": handle_accounts_info,
        "list": handle_accounts_list,
        "update": handle_accounts_update,
    },
    "pay": {None: handle_pay},
    "rates": {
        "list": handle_rates_list,
        "set-all": handle_rates_set_all,
    },
    "routes": {
        "list": handle_routes_list,
        "set": handle_routes_set,
        "set-all": handle_routes_set_all,
    },
    "settlement-engines": {
        "set-all": handle_settlement_engines_set_all,
    },
    "status": {None: handle_status},
}


def resolve_handler(path: CommandPath) -> Handler:
    if not path.category:
        raise UsageError("ilp-cli --help")
    actions = COMMANDS.get(path.category)
    if actions is None:
        raise UnrecognizedCommand(path)
    if None in actions:
        if path.action is not None:
            raise UnrecognizedCommand(path)
        return actions[None]
    if not path.action:
        raise UsageError(f"ilp-cli {path.category} --help")
    handler = actions.get(path.action)
    if handler is None:
        raise UnrecognizedCommand(path)
    return handler


def dispatch(path: CommandPath, raw: RawArguments, config: AppConfig) -> RequestSpec:
    handler = resolve_handler(path)
    spec = handler(raw, config)
    if config.debug:
        print(
            f"Resolved `{path}` -> {spec.method} {spec.url} body_kind={spec.body_kind} "
            f"bearer_present={spec.bearer_token is not None}",
            file=sys.stderr,
        )
    return spec


# Transport and output


def send_request(spec: RequestSpec, config: AppConfig) -> requests.Response:
    headers: Dict[str, str] = {}
    if spec.bearer_token is not None:
        headers["Authorization"] = f"Bearer {spec.bearer_token}"
    kwargs: Dict[str, Any] = {"headers": headers, "timeout": config.request_timeout}
    if spec.body_kind == BODY_JSON:
        kwargs["json"] = spec.body
    elif spec.body_kind == BODY_RAW:
        kwargs["data"] = spec.body.encode("utf-8")
    if config.debug:
        print(f"HTTP {spec.method} {spec.url} timeout={config.request_timeout}", file=sys.stderr)
    try:
        resp = requests.request(spec.method, spec.url, **kwargs)
    except requests.RequestException as exc:
        raise TransportError(f"failed to send request: {exc}") from exc
    if config.debug:
        print(f"HTTP {resp.status_code} content-type={resp.headers.get('Content-Type')}", file=sys.stderr)
    return resp


def _as_rows(payload: Any) -> Tuple[List[List[Any]], List[str]]:
    if isinstance(payload, list) and all(isinstance(item, dict) for item in payload):
        fields: List[str] = []
        for item in payload:
            for key in item:
                if key not in fields:
                    fields.append(key)
        return [[item.get(f, "") for f in fields] for item in payload], fields
    if isinstance(payload, dict):
        return [[key, value] for key, value in payload.items()], ["key", "value"]
    return [[payload]], ["value"]


def format_body(text: str, output_format: str) -> str:
    if output_format == "raw":
        return text
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        # status and route updates answer with plain text
        return text

    if output_format == "json":
        return json.dumps(payload, indent=2)

    if output_format == "yaml":
        import yaml

        return yaml.safe_dump(payload, sort_keys=False)

    # plain table
    table, headers = _as_rows(payload)
    return tabulate(table, headers=headers, tablefmt="github")


def render_response(resp: requests.Response, config: AppConfig) -> None:
    if not resp.ok:
        raise SystemExit(f"ILP CLI error: Unexpected response from node: {resp.status_code} {resp.reason}: {resp.text}")
    if not config.quiet:
        print(format_body(resp.text, config.output_format))


# Command line

GLOBAL_DESTS = frozenset(
    {"env_file", "node_url", "format", "quiet", "debug", "timeout", "dry_run", "command", "action"}
)


def namespace_to_raw(args: argparse.Namespace) -> RawArguments:
    raw: RawArguments = {}
    for name, value in vars(args).items():
        if name in GLOBAL_DESTS or value is None or value is False:
            continue
        if value is True:
            raw[name] = []
        elif isinstance(value, list):
            # --pair K V appends [K, V]; flatten back to the token stream
            flat: List[str] = []
            for item in value:
                if isinstance(item, list):
                    flat.extend(str(v) for v in item)
                else:
                    flat.append(str(item))
            raw[name] = flat
        else:
            raw[name] = [str(value)]
    return raw


def _add_auth(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--auth",
        dest=AUTH_ARG,
        help="Bearer token for the node API (default: $ILP_CLI_API_AUTH)",
    )


def _add_pairs(parser: argparse.ArgumentParser, key: str, value: str) -> None:
    parser.add_argument(
        "--pair",
        dest=PAIRS_ARG,
        nargs=2,
        action="append",
        metavar=(key, value),
        help=f"{key} {value} pair; repeat for each entry",
    )


def _add_account_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ilp-address", help="ILP address of the account")
    parser.add_argument("--max-packet-amount", help="Largest packet amount the account may send")
    parser.add_argument("--min-balance", help="Minimum balance allowed before packets are rejected")
    parser.add_argument("--ilp-over-http-url", help="URL of the peer's ILP-over-HTTP endpoint")
    parser.add_argument("--ilp-over-http-incoming-token", help="Token the peer uses to authenticate to us")
    parser.add_argument("--ilp-over-http-outgoing-token", help="Token we use to authenticate to the peer")
    parser.add_argument("--ilp-over-btp-url", help="URL of the peer's BTP endpoint")
    parser.add_argument("--ilp-over-btp-incoming-token", help="BTP token the peer uses to authenticate to us")
    parser.add_argument("--ilp-over-btp-outgoing-token", help="BTP token we use to authenticate to the peer")
    parser.add_argument("--settle-threshold", help="Balance that triggers a settlement")
    parser.add_argument("--settle-to", help="Balance to settle down to")
    parser.add_argument("--routing-relation", choices=["Parent", "Peer", "Child", "NonRoutingAccount"])
    parser.add_argument("--round-trip-time", help="Expected round trip time in milliseconds")
    parser.add_argument("--amount-per-minute-limit", help="Throughput limit in asset units per minute")
    parser.add_argument("--packets-per-minute-limit", help="Throughput limit in packets per minute")
    parser.add_argument("--settlement-engine-url", help="Settlement engine used for this account")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ilp-cli", description="Interledger node administration CLI")
    parser.add_argument(
        "--env-file",
        default=str(DEFAULT_ENV_FILE),
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--node",
        dest="node_url",
        default=None,
        help=f"Base URL of the node API (default: $ILP_CLI_NODE_URL or {DEFAULT_NODE_URL})",
    )
    parser.add_argument(
        "--format",
        default="raw",
        choices=["raw", "json", "yaml", "plain"],
        help="How to print successful response bodies",
    )
    parser.add_argument("--quiet", action="store_true", help="Do not print bodies of successful responses")
    parser.add_argument("--debug", action="store_true", help="Print verbose debug output for HTTP calls")
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="HTTP connect/read timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the request that would be sent without calling the node",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Accounts
    accounts = subparsers.add_parser("accounts", help="Account operations")
    accounts_sub = accounts.add_subparsers(dest="action")

    acc_balance = accounts_sub.add_parser("balance", help="Show an account's balance")
    acc_balance.add_argument("username", help="Account username")
    _add_auth(acc_balance)

    acc_create = accounts_sub.add_parser("create", help="Create an account (or overwrite with --overwrite)")
    acc_create.add_argument("username", help="Account username")
    _add_auth(acc_create)
    acc_create.add_argument("--overwrite", action="store_true", help="Replace an existing account")
    acc_create.add_argument("--asset-code", required=True, help="Asset code, e.g. USD")
    acc_create.add_argument("--asset-scale", required=True, help="Asset scale, e.g. 9")
    _add_account_options(acc_create)

    acc_delete = accounts_sub.add_parser("delete", help="Delete an account")
    acc_delete.add_argument("username", help="Account username")
    _add_auth(acc_delete)

    acc_incoming = accounts_sub.add_parser("incoming-payments", help="Stream payments received by an account")
    acc_incoming.add_argument("username", help="Account username")
    _add_auth(acc_incoming)

    acc_info = accounts_sub.add_parser("info", help="Show account details")
    acc_info.add_argument("username", help="Account username")
    _add_auth(acc_info)

    acc_list = accounts_sub.add_parser("list", help="List all accounts")
    _add_auth(acc_list)

    acc_update = accounts_sub.add_parser("update", help="Update account settings (all fields with --is-admin)")
    acc_update.add_argument("username", help="Account username")
    _add_auth(acc_update)
    acc_update.add_argument("--is-admin", action="store_true", help="Update as admin (full account details)")
    acc_update.add_argument("--asset-code", help="Asset code (admin only)")
    acc_update.add_argument("--asset-scale", help="Asset scale (admin only)")
    _add_account_options(acc_update)

    # Pay
    pay = subparsers.add_parser("pay", help="Send a payment from an account")
    pay.add_argument("sender_username", help="Username of the paying account")
    _add_auth(pay)
    pay.add_argument("--amount", dest="source_amount", required=True, help="Amount to send, in source units")
    pay.add_argument("--to", dest="receiver", required=True, help="Payment pointer or SPSP URL of the receiver")

    # Rates
    rates = subparsers.add_parser("rates", help="Exchange rate operations")
    rates_sub = rates.add_subparsers(dest="action")

    rates_sub.add_parser("list", help="List exchange rates")

    rates_set_all = rates_sub.add_parser("set-all", help="Replace all exchange rates")
    _add_auth(rates_set_all)
    _add_pairs(rates_set_all, "ASSET", "RATE")

    # Routes
    routes = subparsers.add_parser("routes", help="Routing table operations")
    routes_sub = routes.add_subparsers(dest="action")

    routes_sub.add_parser("list", help="Show the routing table")

    routes_set = routes_sub.add_parser("set", help="Set one static route")
    routes_set.add_argument("prefix", help="ILP address prefix")
    _add_auth(routes_set)
    routes_set.add_argument("--destination", required=True, help="Account username to route the prefix to")

    routes_set_all = routes_sub.add_parser("set-all", help="Replace all static routes")
    _add_auth(routes_set_all)
    _add_pairs(routes_set_all, "PREFIX", "ACCOUNT")

    # Settlement engines
    engines = subparsers.add_parser("settlement-engines", help="Settlement engine operations")
    engines_sub = engines.add_subparsers(dest="action")

    engines_set_all = engines_sub.add_parser("set-all", help="Set the default settlement engine per asset")
    _add_auth(engines_set_all)
    _add_pairs(engines_set_all, "ASSET", "URL")

    # Status
    subparsers.add_parser("status", help="Show node status")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config, env_lookup = load_config(
        Path(args.env_file),
        node_url=args.node_url,
        debug=args.debug,
        quiet=args.quiet,
        output_format=args.format,
        request_timeout=args.timeout,
        dry_run=args.dry_run,
    )

    # Only commands that declare --auth may pick the token up from the environment
    if hasattr(args, AUTH_ARG) and getattr(args, AUTH_ARG) is None:
        setattr(args, AUTH_ARG, env_lookup.get("ILP_CLI_API_AUTH") or None)

    path = CommandPath(args.command, getattr(args, "action", None))
    try:
        spec = dispatch(path, namespace_to_raw(args), config)
        if config.dry_run:
            print(json.dumps(spec.preview(), indent=2))
            return
        resp = send_request(spec, config)
    except UnrecognizedCommand as exc:
        print(f"ILP CLI internal error: {exc}. The command table is out of sync with the parser.", file=sys.stderr)
        raise SystemExit(exc.exit_code) from exc
    except CliError as exc:
        print(f"ILP CLI error: {exc}", file=sys.stderr)
        raise SystemExit(exc.exit_code) from exc

    render_response(resp, config)


if __name__ == "__main__":
    main()
