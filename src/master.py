"""The master application.

Startup order, each step depending on the previous one:

    preinit       lifecycle controller in STARTING, early SIGINT cancels
    options       parse argv into an OptionSet
    setup         settings, logging, --configprint
    compile-once  or: CA negotiation -> terminus wiring -> composition
                  -> daemonize / run, or hand back the WSGI adapter
"""

import json
import logging
import os
import sys

from catalog import CatalogCompiler
from common import EXIT_FAILURE, EXIT_OK, CompileFailure, SetupFailure, get_version
from config import ConfigError, load_settings
from logdest import LogManager, select_destinations
from options import ServiceMode, parse_options
from server.ca import CARole, CertificateAuthority, negotiate
from server.composer import compose
from server.daemon import Daemon
from server.tls import HostIdentity
from terminus import DataKind, StoreError, wire

logger = logging.getLogger(__name__)

EMBEDDED_FLAG = "--rack"


class MasterApplication:
    """Bootstrap and lifecycle wiring for the master process."""

    def __init__(self, stdout=None):
        self.stdout = stdout or sys.stdout
        self.options = None
        self.settings = None
        self.daemon = None
        self.log_manager = LogManager()
        self.authority = None
        self.role = CARole.NONE
        self.bindings = None
        self.compiler = None

    @property
    def will_daemonize(self) -> bool:
        if self.options.embedded:
            return False
        if self.options.daemonize is not None:
            return self.options.daemonize
        return self.settings.daemonize

    def preinit(self, argv):
        """Enter STARTING before options are parsed.

        Skipped when embedded: the hosting server owns signals and the
        process lifecycle.
        """
        if EMBEDDED_FLAG in argv:
            return
        self.daemon = Daemon(argv=argv, log_manager=self.log_manager)
        self.daemon.trap_startup_cancel()

    def run(self, argv):
        """Run the master.

        Returns:
            Exit code, or the WSGI application in embedded mode
        """
        self.preinit(argv)
        self.options = parse_options(argv)
        printed = self.setup()
        if printed is not None:
            return printed
        return self.run_command()

    def setup(self):
        """Load settings and configure logging.

        Returns:
            Exit code if --configprint handled the run, else None
        """
        if os.name == "nt":
            raise SetupFailure("The master is not supported on Microsoft Windows")

        try:
            self.settings = load_settings(self.options.config_path)
        except ConfigError as e:
            raise SetupFailure(str(e), code="E305") from e

        self.setup_logs()

        if self.options.configprint:
            ok = self.settings.print_configs(list(self.options.configprint), out=self.stdout)
            return EXIT_OK if ok else EXIT_FAILURE

        if self.daemon is not None:
            self.daemon.pid_file = self.settings.pid_file
        return None

    def setup_logs(self):
        plan = select_destinations(self.options, self.will_daemonize)
        self.log_manager.apply(plan)

    def setup_ssl(self):
        """Negotiate the CA role (serve mode only)."""
        self.authority = CertificateAuthority(self.settings)
        self.role = negotiate(self.settings, self.authority)
        logger.info("CA role: %s", self.role.value)

    def setup_terminuses(self):
        self.bindings = wire(self.role, self.settings)
        self.compiler = CatalogCompiler(
            self.settings.manifestdir, self.bindings.store(DataKind.NODE)
        )

    def lifecycle_state(self) -> str:
        return self.daemon.state.value

    def run_command(self):
        if self.options.mode is ServiceMode.COMPILE_ONCE:
            return self.compile()
        return self.main()

    def compile(self) -> int:
        """Compile one catalog and print it as JSON.

        Raises:
            CompileFailure: If the node has no facts or compilation fails
        """
        self.log_manager.use_console()
        self.setup_terminuses()
        name = self.options.target_client
        try:
            catalog = self.compiler.find(name)
        except StoreError as e:
            raise CompileFailure(f"Could not compile catalog for {name}: {e}") from e
        if catalog is None:
            raise CompileFailure(f"Could not compile catalog for {name}")

        print(json.dumps(catalog.to_resource(), indent=2, sort_keys=True), file=self.stdout)
        return EXIT_OK

    def main(self):
        """Set up and start serving.

        Returns:
            Exit code (native) or the WSGI application (embedded)
        """
        self.setup_ssl()
        self.setup_terminuses()

        embedded = self.options.embedded
        status_provider = self.lifecycle_state if self.daemon is not None else None

        transport = compose(
            ServiceMode.SERVE,
            self.role,
            embedded,
            settings=self.settings,
            bindings=self.bindings,
            identity=HostIdentity(
                self.settings.ssldir,
                self.settings.certname,
                key_size=self.settings.key_size,
                days=self.settings.cert_ttl_days,
            ),
            authority=self.authority,
            compiler=self.compiler,
            status_provider=status_provider,
        )

        logger.warning("Starting confmaster master version %s", get_version())

        if embedded:
            return transport.start()

        if self.will_daemonize:
            self.daemon.daemonize()
        return self.daemon.start(transport)
