"""
Install service — package re-exports.

Layers, innermost first:

- ``domain`` (L1): pure rules, no I/O (path safety, rollback plans).
- ``execution`` (L4): fetch, verify, extract, place files, run commands.
- ``orchestration`` (L5): the install state machine and uninstall.

Callers import from here::

    from keg.core.services.install import install_manifest
"""

# ── L1: Domain ──
from keg.core.services.install.domain.paths import (  # noqa: F401
    link_escape_reason,
    member_escape_reason,
)
from keg.core.services.install.domain.rollback import (  # noqa: F401
    RollbackAction,
    plan_rollback,
)

# ── L4: Execution ──
from keg.core.services.install.execution.extract import StagedArtifact, extract  # noqa: F401
from keg.core.services.install.execution.fetch import (  # noqa: F401
    fetch_and_verify,
    fetch_in_background,
)
from keg.core.services.install.execution.installer import apply  # noqa: F401
from keg.core.services.install.execution.smoke import run_smoke_test  # noqa: F401

# ── L5: Orchestration ──
from keg.core.services.install.orchestration.orchestrator import (  # noqa: F401
    install_manifest,
    smoke_test_installed,
)
from keg.core.services.install.orchestration.uninstall import (  # noqa: F401
    UninstallReport,
    uninstall_package,
)
