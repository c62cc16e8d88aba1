import asyncio
import getpass
import json
import signal
import sys

import structlog
from prometheus_client import start_http_server

from quotawatch.cli import Command, parse_args
from quotawatch.config import Config
from quotawatch.errors import ConfigurationError
from quotawatch.logging import setup_logging
from quotawatch.metrics import MetricsUpdater
from quotawatch.models import AuthMethod
from quotawatch.notifications import NotificationGate
from quotawatch.registry import default_registry
from quotawatch.scheduler import RefreshInterval, Scheduler
from quotawatch.service import CommandResult, QuotaService
from quotawatch.storage.blob_store import EncryptedBlobStore
from quotawatch.storage.cache import UsageCache
from quotawatch.storage.secret_store import SecretStore

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9185' or '0.0.0.0:9185'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _print(result: "CommandResult") -> "int":
    if result.ok:
        if result.value is not None:
            print(json.dumps(result.value, indent=2, default=str))
        return 0
    print(result.error, file=sys.stderr)
    return 1


async def _login(service: "QuotaService", provider_id: "str", user_input: "str | None") -> "int":
    started = await service.begin_auth(provider_id)
    if not started.ok:
        return _print(started)

    prompt = started.value
    print(prompt["instructions"])
    if prompt["verification_url"]:
        print(f"  URL:  {prompt['verification_url']}")
    if prompt["user_code"]:
        print(f"  Code: {prompt['user_code']}")

    status = service.auth_status(provider_id).value
    if user_input is None and AuthMethod.COOKIES.value in status["auth_methods"]:
        # pasted secrets are not echoed
        user_input = await asyncio.to_thread(getpass.getpass, "Paste value: ")
    return _print(await service.resume_auth(provider_id, user_input))


async def _run(config: "Config", command: "Command", interval: "RefreshInterval") -> "int":
    secrets = SecretStore()
    blobs = EncryptedBlobStore(config.blob_dir, passphrase=config.passphrase)
    registry = default_registry(config, secrets, blobs)
    cache = UsageCache(config.cache_path)
    cache.load()

    gate = NotificationGate(
        session_threshold=config.session_threshold,
        periodic_threshold=config.periodic_threshold,
    )
    scheduler = Scheduler(registry, cache, gate, MetricsUpdater(), interval)
    service = QuotaService(registry, cache, scheduler, gate)

    try:
        await registry.load_credentials()

        if command.name == "status":
            return _print(service.list_usage())
        if command.name == "refresh":
            return _print(await service.refresh(command.provider_id))
        if command.name in ("enable", "disable"):
            return _print(service.set_enabled(command.provider_id, command.name == "enable"))
        if command.name == "login":
            return await _login(service, command.provider_id, command.user_input)
        if command.name == "logout":
            return _print(await service.revoke(command.provider_id))
        if command.name == "auth-status":
            return _print(service.auth_status(command.provider_id))

        if config.listen_address:
            host, port = _parse_listen_address(config.listen_address)
            start_http_server(port, addr=host)
            logger.info("metrics_server_started", host=host, port=port)

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the scheduler
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)

        if interval is not RefreshInterval.MANUAL:
            await scheduler.sweep()
        await scheduler.run()
        return 0
    finally:
        logger.info("shutting_down")
        await service.close()
        await registry.close()
        logger.info("shutdown_complete")


def main(argv: "list[str] | None" = None) -> "None":
    try:
        config, command = parse_args(argv)
    except ConfigurationError as e:
        raise SystemExit(str(e)) from None
    setup_logging(config.log_level, config.log_format)

    try:
        config.prepare()
        interval = RefreshInterval.parse(config.refresh_interval)
    except (ConfigurationError, ValueError) as e:
        # reported once; the scheduler never starts half configured
        logger.error("startup_failed", error=str(e))
        raise SystemExit(2) from None

    exit_code = asyncio.run(_run(config, command, interval))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
