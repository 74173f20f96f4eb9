"""Custom exceptions for route-cli.

Every error raised by the pipeline derives from :class:`RouteError` and carries
the name of the stage it originated from, so the command line can report
where a ``run`` failed:

- ``subscription``: missing URL, download failure, unreadable document
- ``selection``: no reachable node, unknown node name
- ``config``: unsupported node handed to the generator, broken config file
- ``core``: proxy core missing, failed to start or to become ready
- ``launch``: target command could not be started

Example:
    try:
        selection = selector.select(nodes, state)
    except RouteError as e:
        console.print(f"[red][{e.stage}] {e}")
"""


class RouteError(Exception):
    """Base exception for route-cli errors."""

    stage = "route"


class SubscriptionError(RouteError):
    """Raised when the subscription cannot be obtained or read."""

    stage = "subscription"


class SubscriptionNotConfiguredError(SubscriptionError):
    """Raised when no subscription URL has been saved."""


class SubscriptionFetchError(SubscriptionError):
    """Raised when downloading the subscription fails."""


class SubscriptionParseError(SubscriptionError):
    """Raised when the subscription document is not usable structured data."""


class SubscriptionCacheMissingError(SubscriptionError):
    """Raised when the subscription cache has not been populated yet."""


class SelectionError(RouteError):
    """Base exception for node selection errors."""

    stage = "selection"


class NoReachableNodeError(SelectionError):
    """Raised when none of the candidate nodes passed its reachability probe."""


class NodeNotFoundError(SelectionError):
    """Raised when a node name is not present in the subscription."""


class ConfigError(RouteError):
    """Base exception for configuration errors."""

    stage = "config"


class UnsupportedNodeError(ConfigError):
    """Raised when an unsupported node is handed to the config generator."""


class ConfigFileError(ConfigError):
    """Raised when the config document cannot be read or is malformed."""


class CoreError(RouteError):
    """Base exception for proxy core lifecycle errors."""

    stage = "core"


class CoreUnavailableError(CoreError):
    """Raised when no proxy core executable could be found."""


class CoreStartTimeoutError(CoreError):
    """Raised when the proxy core does not accept connections in time."""


class CoreExitedError(CoreError):
    """Raised when the proxy core exits before becoming ready."""


class CorePortInUseError(CoreError):
    """Raised when the mixed port is already taken by another listener."""


class LaunchError(RouteError):
    """Base exception for target command launch errors."""

    stage = "launch"


class TargetNotFoundError(LaunchError):
    """Raised when the target command cannot be found or executed."""

    def __init__(self, target: str, reason: str | None = None) -> None:
        self.target = target
        message = f"Command not found or not executable: {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ProbeError(RouteError):
    """Base exception for reachability probe errors."""

    stage = "probe"


class DNSResolutionError(ProbeError):
    """Raised when DNS resolution fails."""


class TerminationRequested(KeyboardInterrupt):
    """Raised in place of a termination signal (SIGTERM, SIGHUP) during ``run``.

    Derives from :class:`KeyboardInterrupt` so every cleanup path written for
    an interrupt also runs for a termination request.
    """

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"Received signal {signum}")

    @property
    def exit_code(self) -> int:
        return 128 + self.signum
