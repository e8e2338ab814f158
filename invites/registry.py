import re
import secrets
import string
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from infra.clock import Clock, utcnow
from infra.errors import CodeGenerationExhaustedError, ErrorKind
from infra.logging_config import get_logger
from infra.schema import invite_codes
from infra.settings import Settings, get_settings
from infra.store import Store, to_row

from .models import InviteCode, CodeValidation

CODE_ALPHABET = string.ascii_uppercase + string.digits


class InviteCodeRegistry:
    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        stats=None,
        clock: Clock = utcnow,
        logger=None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.stats = stats
        self.clock = clock
        self.logger = logger or get_logger(__name__)
        self._pattern = re.compile(rf"^[A-Z0-9]{{{self.settings.invite_code_length}}}$")

    def generate(self, inviter_id: str) -> InviteCode:
        attempts = self.settings.code_generation_attempts

        for attempt in range(1, attempts + 1):
            code = self._draw_code()
            if self._code_exists(code):
                self.logger.warning("invite_code_collision", attempt=attempt)
                continue

            now = self.clock()
            invite = InviteCode(
                id=str(uuid4()),
                code=code,
                inviter_id=inviter_id,
                created_at=now,
                expires_at=now + timedelta(days=self.settings.invite_validity_days),
                is_active=True,
                usage_count=0,
                max_usage=self.settings.invite_max_usage,
            )
            try:
                self.store.execute(insert(invite_codes).values(**to_row(invite)))
            except IntegrityError:
                # Lost the race to a concurrent insert of the same code
                self.logger.warning("invite_code_collision", attempt=attempt, on_insert=True)
                continue

            self.logger.info("invite_code_created", inviter_id=inviter_id, code_id=invite.id)
            if self.stats is not None:
                self.stats.refresh(inviter_id)
            return invite

        self.logger.error("invite_code_generation_exhausted", inviter_id=inviter_id, attempts=attempts)
        raise CodeGenerationExhaustedError(attempts)

    def validate(self, code: Optional[str]) -> CodeValidation:
        normalized = (code or "").strip().upper()
        if not self._pattern.match(normalized):
            return CodeValidation.fail(ErrorKind.INVALID_FORMAT)

        rows = self.store.query(select(invite_codes).where(invite_codes.c.code == normalized))
        if not rows:
            return CodeValidation.fail(ErrorKind.NOT_FOUND)

        invite = InviteCode.model_validate(rows[0])
        if invite.is_expired(self.clock()):
            return CodeValidation.fail(ErrorKind.EXPIRED)
        if not invite.is_active:
            return CodeValidation.fail(ErrorKind.INACTIVE)
        if invite.usage_count >= invite.max_usage:
            return CodeValidation.fail(ErrorKind.USAGE_LIMIT_EXCEEDED)

        return CodeValidation.ok(invite)

    def deactivate(self, code_id: str, owner_id: str) -> bool:
        result = self.store.execute(
            update(invite_codes)
            .where(
                invite_codes.c.id == code_id,
                invite_codes.c.inviter_id == owner_id,
                invite_codes.c.is_active.is_(True),
            )
            .values(is_active=False)
        )
        deactivated = result.affected_rows > 0
        if deactivated:
            self.logger.info("invite_code_deactivated", code_id=code_id, owner_id=owner_id)
        return deactivated

    def get(self, code_id: str) -> Optional[InviteCode]:
        rows = self.store.query(select(invite_codes).where(invite_codes.c.id == code_id))
        return InviteCode.model_validate(rows[0]) if rows else None

    def list_codes(self, inviter_id: str) -> list[InviteCode]:
        rows = self.store.query(
            select(invite_codes)
            .where(invite_codes.c.inviter_id == inviter_id)
            .order_by(invite_codes.c.created_at.desc())
        )
        return [InviteCode.model_validate(row) for row in rows]

    def _draw_code(self) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.settings.invite_code_length))

    def _code_exists(self, code: str) -> bool:
        rows = self.store.query(select(invite_codes.c.id).where(invite_codes.c.code == code))
        return len(rows) > 0
