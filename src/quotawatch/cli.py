import argparse
from dataclasses import dataclass
from pathlib import Path

from quotawatch.config import Config
from quotawatch.logging import LOG_FORMATS


@dataclass
class Command:
    name: "str"
    provider_id: "str | None" = None
    user_input: "str | None" = None


def _build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="quotawatch",
        description="Track usage quotas of AI service accounts",
    )
    parser.add_argument(
        "--data.dir",
        dest="data_dir",
        default=None,
        help="Directory for the usage cache and encrypted secrets "
        "(default: $QUOTAWATCH_DATA_DIR or ~/.local/share/quotawatch)",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        default=None,
        choices=["manual", "1m", "2m", "5m", "15m"],
        help="Refresh interval (default: 5m)",
    )
    parser.add_argument(
        "--alert.session-threshold",
        dest="session_threshold",
        type=float,
        default=None,
        help="Session usage percentage that triggers an alert (default: 80)",
    )
    parser.add_argument(
        "--alert.periodic-threshold",
        dest="periodic_threshold",
        type=float,
        default=None,
        help="Periodic usage percentage that triggers an alert (default: 90)",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default="",
        help="Address to expose Prometheus metrics on, e.g. :9185 (default: disabled)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=list(LOG_FORMATS),
        help="Log output format (default: console)",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("run", help="Run the refresh scheduler (default)")
    sub.add_parser("status", help="Print the cached usage of every provider")

    refresh = sub.add_parser("refresh", help="Refresh one provider, or every enabled one")
    refresh.add_argument("provider_id", nargs="?", default=None)

    for name, help_text in (
        ("enable", "Enable a provider"),
        ("disable", "Disable a provider"),
        ("logout", "Forget a provider's credential"),
        ("auth-status", "Show a provider's sign-in state"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("provider_id")

    login = sub.add_parser("login", help="Sign in to a provider")
    login.add_argument("provider_id")
    login.add_argument(
        "--input",
        dest="user_input",
        default=None,
        help="Credential material for providers that take a pasted value",
    )
    return parser


def parse_args(argv: "list[str] | None" = None) -> "tuple[Config, Command]":
    args = _build_parser().parse_args(argv)

    config = Config.from_env()
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    if args.refresh_interval:
        config.refresh_interval = args.refresh_interval
    if args.session_threshold is not None:
        config.session_threshold = args.session_threshold
    if args.periodic_threshold is not None:
        config.periodic_threshold = args.periodic_threshold
    config.listen_address = args.listen_address
    config.log_level = args.log_level
    config.log_format = args.log_format

    command = Command(
        name=args.command or "run",
        provider_id=getattr(args, "provider_id", None),
        user_input=getattr(args, "user_input", None),
    )
    return config, command
