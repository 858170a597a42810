import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from supabase import create_client, Client

import config
from exceptions import NotificationError

logger = logging.getLogger("storage")
logger.setLevel(config.LOG_LEVEL)

ORDERS_TABLE = "orders"
REWARDS_TABLE = "reward_points"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def reward_points_for(amount_rupees: Any, rupees_per_point: int = config.REWARD_RUPEES_PER_POINT) -> int:
    # every successful order earns at least one point
    points = int(Decimal(str(amount_rupees or 0)) // max(int(rupees_per_point), 1))
    return max(points, 1)


def create_supabase_client() -> Client:
    if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_KEY:
        raise RuntimeError("Set SUPABASE_URL and SUPABASE_SERVICE_KEY in environment")
    return create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)


class OrderStore:
    """Orders and reward points kept in Supabase; nothing is held locally."""

    def __init__(self, client: Client):
        self.client = client

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table(ORDERS_TABLE).select("*").eq("order_id", order_id).execute()
        return res.data[0] if res.data else None

    def upsert_order(self, order_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Update the order row if one exists for `order_id`, else insert it."""
        if not order_id:
            raise NotificationError("order_id is required to save an order")
        row = {k: v for k, v in fields.items() if v is not None}
        row["updated_at"] = utcnow_iso()
        try:
            existing = self.get_order(order_id)
            if existing:
                res = self.client.table(ORDERS_TABLE).update(row).eq("order_id", order_id).execute()
                logger.info("Order %s updated", order_id)
            else:
                row["order_id"] = order_id
                row["created_at"] = row["updated_at"]
                res = self.client.table(ORDERS_TABLE).insert(row).execute()
                logger.info("Order %s inserted", order_id)
        except NotificationError:
            raise
        except Exception as e:
            logger.exception("Supabase upsert orders failed for %s", order_id)
            raise NotificationError(f"Saving order {order_id} failed: {e}")
        return res.data[0] if res.data else {**row, "order_id": order_id}

    def rewards_recorded(self, order_id: str) -> bool:
        res = self.client.table(REWARDS_TABLE).select("id").eq("order_id", order_id).execute()
        return bool(res.data)

    def add_reward_points(self, order_id: str, amount_rupees: Any, user_id: Optional[str] = None) -> int:
        """
        Credit reward points for a paid order, once.

        Verification can be re-triggered for the same order (a reloaded
        redirect, a webhook racing the browser), so an existing reward row
        for `order_id` means nothing more is added and 0 is returned.
        """
        try:
            if self.rewards_recorded(order_id):
                logger.info("Reward points already recorded for order %s; skipping", order_id)
                return 0
            points = reward_points_for(amount_rupees)
            self.client.table(REWARDS_TABLE).insert({
                "order_id": order_id,
                "user_id": user_id,
                "points": points,
                "created_at": utcnow_iso(),
            }).execute()
        except Exception as e:
            logger.exception("Supabase reward accrual failed for %s", order_id)
            raise NotificationError(f"Reward accrual for {order_id} failed: {e}")
        logger.info("Added %s reward points for order %s user=%s", points, order_id, user_id)
        return points


_store: Optional[OrderStore] = None


def get_store() -> OrderStore:
    global _store
    if _store is None:
        _store = OrderStore(create_supabase_client())
    return _store
