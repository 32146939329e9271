"""Read-only queries over the registration view.

Each method borrows its own pooled connection for the duration of one query;
there is no transaction spanning a batch. Lists come back in ascending code
order so log output and tests are reproducible.

**Queries:**
- eligible registrations: ``worklist_printed`` equals the QUEUED sentinel
- group codes: ``test_type`` 1 or 2 for the registration
- mega codes: ``test_type`` 3 for the registration
- mega template: ``mega_profiles.rep_type`` for a mega code
- contact: ``reg.patient_no`` for the registration
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .database import pooled_connection
from .enums import ItemKind, ProcessingFlag
from .utils import string_or_empty

LOG = logging.getLogger(__name__)


def _in_list(kind: ItemKind) -> str:
    return ", ".join(str(code) for code in kind.type_codes)


ELIGIBLE_SQL = """
    SELECT DISTINCT reg_key
    FROM ldm.reg_with_balance
    WHERE worklist_printed = :flag
    ORDER BY reg_key
"""

GROUP_CODES_SQL = f"""
    SELECT DISTINCT group_code
    FROM ldm.reg_with_balance
    WHERE reg_key = :reg_key
    AND test_type IN ({_in_list(ItemKind.GROUP)})
    ORDER BY group_code
"""

MEGA_CODES_SQL = f"""
    SELECT DISTINCT test_code
    FROM ldm.reg_with_balance
    WHERE reg_key = :reg_key
    AND test_type IN ({_in_list(ItemKind.MEGA)})
    ORDER BY test_code
"""

MEGA_TEMPLATE_SQL = """
    SELECT rep_type
    FROM mega_profiles
    WHERE mega_code = :mega_code
"""

CONTACT_SQL = """
    SELECT patient_no
    FROM reg
    WHERE reg_key = :reg_key
"""


class RegistrationSource:
    """Query surface for eligible work and its sub-items.

    Parameters
    ----------
    pool
        oracledb session pool owned by the scheduler.
    """

    def __init__(self, pool) -> None:
        self.pool = pool

    def _fetch_column(self, sql: str, params: Dict[str, Any]) -> List[Any]:
        with pooled_connection(self.pool) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [row[0] for row in cur.fetchall()]

    def _fetch_one(self, sql: str, params: Dict[str, Any]) -> Optional[Any]:
        with pooled_connection(self.pool) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return row[0] if row else None

    def list_eligible(self) -> List[str]:
        """Return registration keys queued for report delivery."""
        keys = self._fetch_column(ELIGIBLE_SQL, {"flag": ProcessingFlag.QUEUED.value})
        return [string_or_empty(key) for key in keys]

    def get_group_codes(self, reg_key: str) -> List[str]:
        codes = self._fetch_column(GROUP_CODES_SQL, {"reg_key": reg_key})
        return [string_or_empty(code) for code in codes]

    def get_mega_codes(self, reg_key: str) -> List[str]:
        codes = self._fetch_column(MEGA_CODES_SQL, {"reg_key": reg_key})
        return [string_or_empty(code) for code in codes]

    def resolve_mega_template(self, mega_code: str) -> Optional[str]:
        """Return the report template name for a mega code, or None."""
        rep_type = string_or_empty(self._fetch_one(MEGA_TEMPLATE_SQL, {"mega_code": mega_code}))
        return rep_type or None

    def get_contact_phone(self, reg_key: str) -> Optional[str]:
        """Return the raw patient contact for a registration, or None."""
        patient_no = string_or_empty(self._fetch_one(CONTACT_SQL, {"reg_key": reg_key}))
        return patient_no or None
