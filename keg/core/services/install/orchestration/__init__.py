"""
L5 Orchestration — top-level coordinators.
"""

from keg.core.services.install.orchestration.orchestrator import (  # noqa: F401
    build_receipt,
    default_fetcher,
    find_missing_dependencies,
    install_manifest,
    smoke_test_installed,
)
from keg.core.services.install.orchestration.uninstall import (  # noqa: F401
    UninstallReport,
    uninstall_package,
)
