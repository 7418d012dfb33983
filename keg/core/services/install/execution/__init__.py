"""
L4 Execution — I/O for install runs (network, archives, filesystem, processes).
"""

from keg.core.services.install.execution.extract import (  # noqa: F401
    StagedArtifact,
    detect_format,
    extract,
)
from keg.core.services.install.execution.fetch import (  # noqa: F401
    download,
    fetch_and_verify,
    fetch_in_background,
)
from keg.core.services.install.execution.installer import apply, rollback  # noqa: F401
from keg.core.services.install.execution.smoke import run_smoke_test  # noqa: F401
from keg.core.services.install.execution.subprocess_runner import run_command  # noqa: F401
from keg.core.services.install.execution.verify import (  # noqa: F401
    compute_digest,
    digests_match,
    file_digest,
    verify_bytes,
)
