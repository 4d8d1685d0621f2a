"""OUI directory: beneficiary lookup plus registry sync from the Helium entities API."""

from datetime import datetime, timezone

import httpx
from sqlalchemy import select

from heliumtools.common.logging import logger
from heliumtools.services.dc_purchase.models import Oui, OuiBalance


async def fetch_ouis_from_api(url: str, client: httpx.AsyncClient | None = None) -> list[dict]:
    """Fetch all registered OUIs, keeping only rows with an integer OUI and an escrow."""

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=30.0)
    try:
        resp = await client.get(url, headers={"accept": "application/json"})
        resp.raise_for_status()
        data = resp.json()
    finally:
        if owns_client:
            await client.aclose()

    orgs = data.get("orgs") if isinstance(data, dict) else None
    if not isinstance(orgs, list):
        raise ValueError("unexpected OUI payload shape")

    result = []
    for org in orgs:
        try:
            oui = int(org.get("oui"))
        except (TypeError, ValueError):
            continue
        if not org.get("escrow"):
            continue
        delegate_keys = org.get("delegate_keys")
        result.append(
            {
                "oui": oui,
                "owner": org.get("owner"),
                "payer": org.get("payer"),
                "escrow": org.get("escrow"),
                "delegate_keys": delegate_keys if isinstance(delegate_keys, list) else [],
                "locked": bool(org.get("locked")),
            }
        )
    return result


class OuiDirectory:
    """Read/write access to the `ouis` and `oui_balances` tables."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get(self, oui: int) -> Oui | None:
        with self.session_factory() as db:
            return db.get(Oui, oui)

    def latest_balance(self, oui: int) -> OuiBalance | None:
        with self.session_factory() as db:
            return db.execute(
                select(OuiBalance).where(OuiBalance.oui == oui).order_by(OuiBalance.date.desc()).limit(1)
            ).scalar_one_or_none()

    def upsert_ouis(self, orgs: list[dict]) -> int:
        """Insert or refresh directory rows; returns the number written."""

        synced_at = datetime.now(timezone.utc)
        written = 0
        with self.session_factory() as db:
            for org in orgs:
                row = db.get(Oui, org["oui"])
                if row is None:
                    row = Oui(oui=org["oui"])
                    db.add(row)
                row.owner = org.get("owner")
                row.payer = org.get("payer")
                row.escrow = org.get("escrow")
                row.delegate_keys = org.get("delegate_keys") or []
                row.locked = bool(org.get("locked"))
                row.last_synced_at = synced_at
                written += 1
            db.commit()
        logger.info("oui_directory_synced count=%s", written)
        return written

    def record_balance(self, oui: int, balance_dc: int) -> None:
        """Store today's escrow balance snapshot, replacing an earlier one from the same day."""

        now = datetime.now(timezone.utc)
        day = now.date().isoformat()
        with self.session_factory() as db:
            row = db.execute(
                select(OuiBalance).where(OuiBalance.oui == oui, OuiBalance.date == day)
            ).scalar_one_or_none()
            if row is None:
                row = OuiBalance(oui=oui, date=day, balance_dc=str(balance_dc), fetched_at=now)
                db.add(row)
            else:
                row.balance_dc = str(balance_dc)
                row.fetched_at = now
            db.commit()
