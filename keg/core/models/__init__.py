"""
Domain models for keg.

Re-exports the public model types so callers can write
``from keg.core.models import Manifest``.
"""

from keg.core.models.manifest import (  # noqa: F401
    DependencyKind,
    DestinationCategory,
    Digest,
    Dependency,
    InstallStep,
    Manifest,
    Shell,
    SmokeTestSpec,
)
from keg.core.models.layout import InstallLayout, LayoutConfig  # noqa: F401
from keg.core.models.receipt import InstalledFile, Receipt  # noqa: F401
from keg.core.models.report import (  # noqa: F401
    AppliedStep,
    InstallReport,
    InstallState,
    SmokeTestResult,
)
