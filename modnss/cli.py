#!/usr/bin/env python3
"""
update-mod-nss command line.

Installs a renewed certificate into the mod_nss certificate database by
building a new generation of the database directory and atomically
repointing the alias symlink at it.

Usage:
    update-mod-nss [-h] [-d|-i] [-t|-s] [--allow-root] [--config FILE]
                   [--format {json,text}] NSS_USER HOSTNAME

Exit status is 0 on success, 1 on any fatal error and 2 on usage errors.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from modnss import __version__
from modnss.certdb import CertificateDatabase, CertutilDatabase, DatabaseFormat, database_format
from modnss.certificate import certificate_path, load_certificate
from modnss.config import ConfigError, ConfigManager
from modnss.errors import MigrationError
from modnss.handles import DirectoryHandle
from modnss.identity import resolve_principal
from modnss.observability import (
    Component,
    LogLevel,
    LogSink,
    configure_logging,
    get_logger,
)
from modnss.orchestrator import DatabaseFactory, GenerationSwap, SwapResult

log = get_logger("cli", Component.CLI)


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def certutil_factory(manager: ConfigManager) -> DatabaseFactory:
    """Database factory driving the NSS tools named in the configuration."""
    certutil = manager.get("database.certutil")
    modutil = manager.get("database.modutil")
    trust_flags = manager.get("database.trust_flags")

    def factory(directory: DirectoryHandle, fmt: DatabaseFormat) -> CertificateDatabase:
        return CertutilDatabase(
            directory,
            fmt,
            certutil=certutil,
            modutil=modutil,
            trust_flags=trust_flags,
        )

    return factory


class UpdateModNssCLI:
    """Main CLI application."""

    def __init__(self, database_factory: Optional[DatabaseFactory] = None):
        self.database_factory = database_factory
        self.parser = argparse.ArgumentParser(
            prog="update-mod-nss",
            description="Install a renewed certificate into the mod_nss database",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"update-mod-nss {__version__}",
        )

        # the last of -d/-i and of -t/-s wins
        self.parser.add_argument(
            "--debug", "-d",
            dest="verbosity",
            action="store_const",
            const=LogLevel.DEBUG,
            help="log debugging (and informational) messages",
        )
        self.parser.add_argument(
            "--info", "-i",
            dest="verbosity",
            action="store_const",
            const=LogLevel.INFO,
            help="log informational messages",
        )

        self.parser.add_argument(
            "--tty", "-t",
            dest="sink",
            action="store_const",
            const=LogSink.STDERR,
            help="log to stderr",
        )
        self.parser.add_argument(
            "--syslog", "-s",
            dest="sink",
            action="store_const",
            const=LogSink.SYSLOG,
            help="log to syslog",
        )

        self.parser.add_argument(
            "--allow-root",
            action="store_true",
            help="allow NSS_USER (or its group) to be root",
        )
        self.parser.add_argument(
            "--config", "-c",
            metavar="FILE",
            help="configuration file (default: /etc/update-mod-nss.yaml if present)",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "text"],
            default=None,
            help="stderr log format (default: from config, else text)",
        )
        self.parser.add_argument("nss_user", metavar="NSS_USER", help="owner of the NSS database")
        self.parser.add_argument("hostname", metavar="HOSTNAME", help="certificate subject")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        # Provisional logging so configuration errors are reported somewhere
        self._configure_logging(parsed, None)

        try:
            manager = self._load_config(parsed)
            self._configure_logging(parsed, manager)
            result = self._swap(parsed, manager)

        except CLIError as e:
            log.critical(str(e))
            return e.exit_code

        except ConfigError as e:
            log.critical(f"Configuration error: {e}")
            return 1

        except MigrationError as e:
            step = e.step or "startup"
            log.critical(f"{step} failed: {e}", step=step)
            return 1

        log.info(
            f"Replaced {result.old_generation} with {result.new_generation}",
            removed=result.removed_certificates,
            files=result.copy_stats.files,
        )
        return 0

    def _sink(self, parsed: argparse.Namespace) -> LogSink:
        if parsed.sink is not None:
            return parsed.sink
        return LogSink.STDERR if sys.stderr.isatty() else LogSink.SYSLOG

    def _level(self, parsed: argparse.Namespace, manager: Optional[ConfigManager]) -> LogLevel:
        if parsed.verbosity is not None:
            return parsed.verbosity
        if manager is not None:
            return LogLevel(manager.get("observability.log_level"))
        return LogLevel.NOTICE

    def _configure_logging(self, parsed: argparse.Namespace, manager: Optional[ConfigManager]) -> None:
        fmt = parsed.format
        address = "/dev/log"
        if manager is not None:
            fmt = fmt or manager.get("observability.log_format")
            address = manager.get("observability.syslog_address")
        configure_logging(
            sink=self._sink(parsed),
            level=self._level(parsed, manager),
            fmt=fmt or "text",
            syslog_address=address,
        )

    def _load_config(self, parsed: argparse.Namespace) -> ConfigManager:
        manager = ConfigManager()
        if parsed.config:
            manager.load_from_file(parsed.config)
        else:
            manager.load_defaults()

        errors = manager.validate()
        if errors:
            raise ConfigError("; ".join(errors))
        return manager

    def _swap(self, parsed: argparse.Namespace, manager: ConfigManager) -> SwapResult:
        identity = resolve_principal(parsed.nss_user, allow_root=parsed.allow_root)

        path = certificate_path(manager.get("paths.state_dir"), parsed.hostname)
        certificate = load_certificate(path)
        log.debug(
            f"Loaded certificate {path}",
            common_name=certificate.common_name,
            not_after=certificate.format_not_after(),
        )

        try:
            fmt = database_format(manager.get("database.format"))
        except ValueError as e:
            raise CLIError(str(e)) from e

        factory = self.database_factory or certutil_factory(manager)

        with DirectoryHandle.open_path(manager.get("paths.conf_dir")) as conf:
            swap = GenerationSwap(
                conf,
                parsed.hostname,
                certificate,
                identity,
                fmt,
                factory,
                alias_name=manager.get("paths.alias_name"),
                temp_link_name=manager.get("paths.temp_link_name"),
                generation_prefix=manager.get("paths.generation_prefix"),
            )
            return swap.run()


def main() -> int:
    """CLI entry point."""
    cli = UpdateModNssCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
