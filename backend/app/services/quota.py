"""
Quota Ledger: contadores de conversiones por usuario.

Reglas:
- Cada plan tiene un limite DIARIO (el que bloquea) y uno mensual (que
  solo se reporta). Ver settings.PLAN_LIMITS.
- Si la fecha del request es distinta de la fecha de `last_reset`, el
  contador diario vuelve a 0 DENTRO del mismo check (leer-modificar-
  escribir en una sola sesion, no en dos viajes separados).
- check() rechaza ANTES de cualquier efecto: si el usuario no puede
  convertir, no se sube nada, no se convierte nada, no se cobra nada.
- increment() solo debe llamarse despues de que la conversion que se
  esta "cobrando" termino bien (URL firmada emitida).

Los metodos son sincronos (SQLAlchemy clasico); desde codigo async se
llaman con asyncio.to_thread.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.config import settings
from app.errors import DailyLimitReachedError, InsufficientConversionsError
from app.models.records import UserRecord, as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    owner_id: str
    plan: str
    used: int
    limit: int
    monthly_used: int
    monthly_limit: int
    last_reset: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


def plan_limits(plan: str) -> dict[str, int]:
    return settings.PLAN_LIMITS.get(plan, settings.PLAN_LIMITS[settings.DEFAULT_PLAN])


def daily_limit(plan: str) -> int:
    return plan_limits(plan)["daily"]


def needs_daily_reset(last_reset: datetime, now: datetime) -> bool:
    """Cambio de dia calendario, siempre medido en UTC."""
    return as_utc(last_reset).date() != as_utc(now).date()


def needs_monthly_reset(last_reset: datetime, now: datetime) -> bool:
    last_reset, now = as_utc(last_reset), as_utc(now)
    return (last_reset.year, last_reset.month) != (now.year, now.month)


class QuotaLedger:
    """
    Atributos:
        engine: Engine de SQLAlchemy donde vive la tabla `users`.
        clock: Funcion que retorna "ahora" en UTC (aware). Se inyecta en
            los tests para simular el cambio de dia.
    """

    def __init__(self, engine: Engine, clock=utcnow):
        self.engine = engine
        self.clock = clock

    def ensure_user(self, owner_id: str, email: str | None = None) -> UserRecord:
        """Crea la fila del usuario (plan free, contador 0) si no existe."""
        with Session(self.engine) as session:
            user = session.get(UserRecord, owner_id)
            if user is None:
                user = UserRecord(
                    id=owner_id,
                    email=email,
                    plan=settings.DEFAULT_PLAN,
                    last_reset=self.clock(),
                )
                session.add(user)
                session.commit()
                session.refresh(user)
                logger.info("Created quota record for %s", owner_id)
            elif email and user.email != email:
                user.email = email
                session.add(user)
                session.commit()
                session.refresh(user)
            return user

    def check(self, owner_id: str, requested: int = 1, reserved: int = 0) -> QuotaStatus:
        """
        Verifica que `owner_id` pueda hacer `requested` conversiones mas.

        `reserved` son conversiones ya aprobadas que todavia no se cobraron
        (jobs en curso); cuentan como usadas para esta verificacion.

        Raises:
            DailyLimitReachedError: el contador ya llego al limite.
            InsufficientConversionsError: quedan menos de `requested`.
        """
        with Session(self.engine) as session:
            user = self._load(session, owner_id)
            if self._apply_resets(user):
                session.add(user)
                session.commit()
                session.refresh(user)
            status = self._status(user)

        used = status.used + reserved
        if used >= status.limit:
            logger.info("Daily limit reached for %s (%d/%d, %d reserved)", owner_id, status.used, status.limit, reserved)
            raise DailyLimitReachedError(status.plan)
        remaining = status.limit - used
        if requested > remaining:
            raise InsufficientConversionsError(remaining, requested)
        return status

    def preview(self, owner_id: str) -> QuotaStatus:
        """Estado actual SIN escribir nada (el reset se calcula en memoria)."""
        with Session(self.engine) as session:
            user = self._load(session, owner_id)
            self._apply_resets(user)
            status = self._status(user)
            session.rollback()
        return status

    def increment(self, owner_id: str) -> QuotaStatus:
        """
        Suma 1 al contador diario y al mensual.

        La suma se hace en SQL (SET conversion_count = conversion_count + 1)
        para que dos incrementos concurrentes no se pisen.
        """
        with Session(self.engine) as session:
            user = self._load(session, owner_id)
            if self._apply_resets(user):
                user.conversion_count = 1
                user.monthly_conversion_count = user.monthly_conversion_count + 1
            else:
                user.conversion_count = UserRecord.conversion_count + 1
                user.monthly_conversion_count = UserRecord.monthly_conversion_count + 1
            session.add(user)
            session.commit()
            session.refresh(user)
            status = self._status(user)
        logger.info("Quota for %s is now %d/%d", owner_id, status.used, status.limit)
        return status

    def _load(self, session: Session, owner_id: str) -> UserRecord:
        user = session.get(UserRecord, owner_id)
        if user is None:
            user = UserRecord(id=owner_id, plan=settings.DEFAULT_PLAN, last_reset=self.clock())
            session.add(user)
            # flush: el INSERT sale ya, asi un incremento posterior es un UPDATE
            session.flush()
        return user

    def _apply_resets(self, user: UserRecord) -> bool:
        now = self.clock()
        if user.last_reset is not None and not needs_daily_reset(user.last_reset, now):
            return False
        if user.last_reset is None or needs_monthly_reset(user.last_reset, now):
            user.monthly_conversion_count = 0
        user.conversion_count = 0
        user.last_reset = now
        return True

    @staticmethod
    def _status(user: UserRecord) -> QuotaStatus:
        limits = plan_limits(user.plan)
        return QuotaStatus(
            owner_id=user.id,
            plan=user.plan,
            used=user.conversion_count,
            limit=limits["daily"],
            monthly_used=user.monthly_conversion_count,
            monthly_limit=limits["monthly"],
            last_reset=as_utc(user.last_reset),
        )
