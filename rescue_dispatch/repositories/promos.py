import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.concurrency import conditional_update
from rescue_dispatch.models.promo import PromoCode, PromoRedemption


class PromoRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_code(self, code: str) -> Optional[PromoCode]:
        result = await self.db.execute(
            select(PromoCode).where(PromoCode.code == code.strip().upper(), PromoCode.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def count_user_redemptions(self, promo_id: str, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(PromoRedemption.id)).where(
                PromoRedemption.promo_id == promo_id,
                PromoRedemption.user_id == user_id,
            )
        )
        return int(result.scalar_one())

    async def redeem(
        self,
        promo: PromoCode,
        user_id: str,
        rescue_id: str,
        discount: Decimal,
        at: datetime,
    ) -> bool:
        """
        Count one use against the total cap with a conditional update and
        record the redemption. False when the cap was reached meanwhile.
        """
        row = await conditional_update(
            self.db,
            PromoCode,
            promo.id,
            [
                PromoCode.is_active.is_(True),
                or_(
                    PromoCode.usage_limit_total.is_(None),
                    PromoCode.usage_count < PromoCode.usage_limit_total,
                ),
            ],
            {"usage_count": PromoCode.usage_count + 1},
        )
        if row is None:
            return False
        self.db.add(
            PromoRedemption(
                id=str(uuid.uuid4()),
                promo_id=promo.id,
                user_id=user_id,
                rescue_id=rescue_id,
                discount_applied=discount,
                used_at=at,
            )
        )
        await self.db.flush()
        return True
