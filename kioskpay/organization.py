"""Organization identifier helpers"""

from typing import Optional

# Ids the kiosk sends before it has been configured
UNSET_ORGANIZATION_IDS = {"", "default"}


def is_unset_organization_id(organization_id: Optional[str]) -> bool:
    return organization_id is None or organization_id.strip() in UNSET_ORGANIZATION_IDS


def normalize_organization_id(organization_id: str) -> str:
    """
    Strip a device/merchant suffix from a compound organization id.

    Kiosks may report ids like "<org>_<suffix>"; only long compound ids are
    split so short ids that naturally contain "_" are left intact.
    """
    if "_" in organization_id and len(organization_id) > 20:
        return organization_id.split("_", 1)[0]
    return organization_id
