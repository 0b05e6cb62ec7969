"""listrelay: a mailing-list relay that watches one IMAP mailbox.

Public API re-exported here for convenience::

    from listrelay import ListDaemon, RecipientStore, CommandDispatcher
"""

from .config import ListConfig, MailConfig, RelayConfig, RetryConfig
from .daemon import ListDaemon
from .dispatcher import CommandDispatcher, classify, is_valid_address
from .errors import (
    AlreadyPresentError,
    MessageBodyUnavailableError,
    NotPresentError,
    PersistenceError,
    PushNotSupportedError,
    RelayError,
    SendError,
    StoreError,
    TransportDisconnectedError,
    TransportError,
)
from .imap_client import AsyncImapClient, FetchedHeader
from .interface import MailTransport
from .logging import setup_logging
from .models import (
    ChangeEvent,
    Command,
    DaemonStatus,
    DispatchFailure,
    DispatchReport,
    InboundMessage,
    WatchMode,
)
from .persistence import ConfigFile
from .pool import gather_bounded
from .retry import with_retry
from .shutdown import stop_on_signals
from .smtp_client import SmtpSender
from .store import RecipientStore
from .transport import ImapSmtpTransport
from .watcher import ChangeWatcher

__all__ = [
    "AlreadyPresentError",
    "AsyncImapClient",
    "ChangeEvent",
    "ChangeWatcher",
    "Command",
    "CommandDispatcher",
    "ConfigFile",
    "DaemonStatus",
    "DispatchFailure",
    "DispatchReport",
    "FetchedHeader",
    "ImapSmtpTransport",
    "InboundMessage",
    "ListConfig",
    "ListDaemon",
    "MailConfig",
    "MailTransport",
    "MessageBodyUnavailableError",
    "NotPresentError",
    "PersistenceError",
    "PushNotSupportedError",
    "RecipientStore",
    "RelayConfig",
    "RelayError",
    "RetryConfig",
    "SendError",
    "SmtpSender",
    "StoreError",
    "TransportDisconnectedError",
    "TransportError",
    "WatchMode",
    "classify",
    "gather_bounded",
    "is_valid_address",
    "setup_logging",
    "stop_on_signals",
    "with_retry",
]
