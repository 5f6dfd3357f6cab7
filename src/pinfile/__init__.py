from ._version import __version__
from .client import GitHubClient, PinfileError, TransportError
from .orchestrator import Orchestrator
from .reconcile import Reconciler, Verdict
from .resolver import ReferenceResolver, ResolutionError
from .source import HostConfig, ParseError, SourceDescriptor, SourceParser, is_commit_like

__all__ = [
    "GitHubClient",
    "HostConfig",
    "Orchestrator",
    "ParseError",
    "PinfileError",
    "Reconciler",
    "ReferenceResolver",
    "ResolutionError",
    "SourceDescriptor",
    "SourceParser",
    "TransportError",
    "Verdict",
    "__version__",
    "is_commit_like",
]
