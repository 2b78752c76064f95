"""
Service wiring for Bluecap.

Services bundles the components one invocation works with, all built
around the same Settings and IdentityContext. The unprivileged phase and
the privileged phase each build their own Services; nothing is shared
across the escalation boundary except the positional arguments and the
identity context.
"""

from dataclasses import dataclass

from bluecap.config import Settings
from bluecap.exports import ExportManager
from bluecap.identity import IdentityContext
from bluecap.persistence import PersistenceManager
from bluecap.process import ExecFunction, replace_process
from bluecap.resolver import CapsuleResolver
from bluecap.sandbox import SandboxInvoker
from bluecap.store import RecordStore
from bluecap.trust import TrustSyncer


@dataclass
class Services:
    """
    Components for one invocation.

    Attributes:
        settings: Filesystem layout and external programs
        identity: The original caller and mode flags
        program: Absolute path of the bluecap executable
    """

    settings: Settings
    identity: IdentityContext
    program: str
    store: RecordStore
    resolver: CapsuleResolver
    persistence: PersistenceManager
    trust: TrustSyncer
    exports: ExportManager
    sandbox: SandboxInvoker

    @classmethod
    def create(
        cls,
        settings: Settings,
        identity: IdentityContext,
        program: str,
        exec_fn: ExecFunction = replace_process,
    ) -> "Services":
        store = RecordStore()
        persistence = PersistenceManager(settings, store, identity)
        return cls(
            settings=settings,
            identity=identity,
            program=program,
            store=store,
            resolver=CapsuleResolver(settings, identity),
            persistence=persistence,
            trust=TrustSyncer(settings, store),
            exports=ExportManager(settings, store, identity, program),
            sandbox=SandboxInvoker(settings, identity, persistence, exec_fn=exec_fn),
        )
