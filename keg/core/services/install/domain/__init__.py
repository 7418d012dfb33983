"""
L1 Domain — pure install logic (no I/O).
"""

from keg.core.services.install.domain.paths import (  # noqa: F401
    link_escape_reason,
    member_escape_reason,
)
from keg.core.services.install.domain.rollback import RollbackAction, plan_rollback  # noqa: F401
