"""
Profile Integrity Manager
Поддержка инварианта "ровно один активный профиль на владельца" и его ремонт
"""

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any
from urllib.parse import quote

from app.config.settings import Settings, get_settings
from data.database import Database, Access
from data.models import UserProfile
from utils.helpers import (
    ValidationError, ForbiddenError, NoActiveProfileError, ProfileLimitReachedError,
    ProfileNotFoundError, IntegrityViolationError, ensure_utc
)
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

RANDOM_NAMES = [
    'Phoenix', 'Dragon', 'Tiger', 'Wolf', 'Eagle',
    'Lion', 'Falcon', 'Panther', 'Shark', 'Bear',
    'Hawk', 'Cobra', 'Viper', 'Thunder', 'Storm',
    'Blaze', 'Shadow', 'Ghost', 'Ninja', 'Samurai'
]

RANDOM_AVATARS = [
    'https://api.dicebear.com/7.x/avataaars/svg?seed=',
    'https://api.dicebear.com/7.x/bottts/svg?seed=',
    'https://api.dicebear.com/7.x/personas/svg?seed=',
    'https://api.dicebear.com/7.x/lorelei/svg?seed=',
]

DEFAULT_COMMISSION = 0.05

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ============================================================================
# СОСТОЯНИЯ И ОТЧЕТЫ
# ============================================================================

class ProfileState(str, Enum):
    """Состояние профилей одного владельца"""
    NO_PROFILES = "NO_PROFILES"
    ZERO_ACTIVE = "ZERO_ACTIVE"
    MULTI_ACTIVE = "MULTI_ACTIVE"
    HEALED = "HEALED"


@dataclass
class HealReport:
    """Результат ремонта профилей владельца"""
    owner: str
    state_before: ProfileState
    active_profile_id: Optional[str] = None
    activated: List[str] = field(default_factory=list)
    deactivated: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.activated or self.deactivated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'owner': self.owner,
            'state_before': self.state_before.value,
            'active_profile_id': self.active_profile_id,
            'activated': self.activated,
            'deactivated': self.deactivated,
            'changed': self.changed,
        }


@dataclass
class RepairReport:
    """Результат админского обхода всех владельцев"""
    owners_checked: int = 0
    multi_active_fixed: int = 0
    zero_active_fixed: int = 0
    orphaned_skipped: int = 0
    over_limit_owners: List[Dict[str, Any]] = field(default_factory=list)
    fixes: List[HealReport] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'owners_checked': self.owners_checked,
            'multi_active_fixed': self.multi_active_fixed,
            'zero_active_fixed': self.zero_active_fixed,
            'orphaned_skipped': self.orphaned_skipped,
            'over_limit_owners': self.over_limit_owners,
            'fixes': [fix.to_dict() for fix in self.fixes],
        }


def _recency_key(profile: UserProfile):
    """Самый "свежий" профиль: updated_date, затем created_date"""
    return (
        ensure_utc(profile.last_touched) or _EPOCH,
        ensure_utc(profile.created_date) or _EPOCH,
        profile.id,
    )


def classify(profiles: List[UserProfile]) -> ProfileState:
    if not profiles:
        return ProfileState.NO_PROFILES
    active_count = sum(1 for profile in profiles if profile.is_active)
    if active_count == 0:
        return ProfileState.ZERO_ACTIVE
    if active_count > 1:
        return ProfileState.MULTI_ACTIVE
    return ProfileState.HEALED


# ============================================================================
# MANAGER
# ============================================================================

class ProfileIntegrityManager:
    """
    Менеджер целостности профилей

    Активный профиль никогда не хранится в памяти процесса: это инвариант
    в хранилище, который поддерживается идемпотентным ремонтом и
    переключением с последующей проверкой.
    """

    def __init__(self, database: Database, settings: Optional[Settings] = None):
        self.db = database
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.ProfileIntegrityManager")

        self.stats = {
            'heals': 0,
            'switches': 0,
            'integrity_violations': 0,
        }

    async def list_profiles(self, owner: str) -> List[UserProfile]:
        return await self.db.filter(
            UserProfile, {}, Access.for_owner(owner), order_by='-updated_date'
        )

    async def get_state(self, owner: str) -> ProfileState:
        return classify(await self.list_profiles(owner))

    # ------------------------------------------------------------------
    # Ремонт
    # ------------------------------------------------------------------

    async def heal(self, owner: str) -> HealReport:
        """
        Привести профили владельца к состоянию HEALED

        ZERO_ACTIVE: активировать самый свежий профиль.
        MULTI_ACTIVE: оставить самый свежий активный, остальные выключить.
        """
        access = Access.for_owner(owner)
        profiles = await self.list_profiles(owner)
        state = classify(profiles)
        report = HealReport(owner=owner, state_before=state)

        if state == ProfileState.NO_PROFILES:
            return report

        if state == ProfileState.HEALED:
            report.active_profile_id = next(p.id for p in profiles if p.is_active)
            return report

        if state == ProfileState.ZERO_ACTIVE:
            keep = max(profiles, key=_recency_key)
            await self.db.update(UserProfile, keep.id, {'is_active': True}, access)
            report.activated.append(keep.id)
            self.logger.warning(
                f"🔧 Zero active profiles for {owner}, activated '{keep.profile_name}' ({keep.id})"
            )
        else:
            active = [p for p in profiles if p.is_active]
            keep = max(active, key=_recency_key)
            for profile in active:
                if profile.id == keep.id:
                    continue
                await self.db.update(UserProfile, profile.id, {'is_active': False}, access)
                report.deactivated.append(profile.id)
            self.logger.warning(
                f"🔧 {len(active)} active profiles for {owner}, kept '{keep.profile_name}' ({keep.id})"
            )

        report.active_profile_id = keep.id
        self.stats['heals'] += 1
        return report

    async def switch(self, owner: str, target_profile_id: str) -> UserProfile:
        """
        Атомарное по намерению переключение активного профиля

        Без блокировки: выключаем все, включаем цель, затем перечитываем и
        проверяем, что активен ровно один профиль и это цель.
        """
        access = Access.for_owner(owner)
        target = await self.db.get(UserProfile, target_profile_id, access)
        if target is None:
            raise ProfileNotFoundError(
                f"Profile {target_profile_id} not found",
                details={'profile_id': target_profile_id}
            )

        profiles = await self.list_profiles(owner)
        for profile in profiles:
            if profile.is_active and profile.id != target.id:
                await self.db.update(UserProfile, profile.id, {'is_active': False}, access)

        await self.db.update(UserProfile, target.id, {'is_active': True}, access)

        active = await self.db.filter(UserProfile, {'is_active': True}, access)
        if len(active) != 1 or active[0].id != target.id:
            self.stats['integrity_violations'] += 1
            self.logger.error(
                f"❌ Switch verification failed for {owner}: "
                f"{len(active)} active profiles, expected only {target.id}"
            )
            raise IntegrityViolationError(
                "Profile switch verification failed",
                details={'active_count': len(active)}
            )

        self.stats['switches'] += 1
        self.logger.info(f"🔄 Switched active profile for {owner} to '{target.profile_name}'")
        return active[0]

    async def resolve_active_profile(self, owner: str) -> UserProfile:
        """
        Единственный активный профиль владельца

        Нарушения инварианта сначала лечатся; фатально только то, что
        пережило ремонт.
        """
        access = Access.for_owner(owner)
        active = await self.db.filter(UserProfile, {'is_active': True}, access)
        if len(active) == 1:
            return active[0]

        report = await self.heal(owner)
        if report.state_before == ProfileState.NO_PROFILES:
            raise NoActiveProfileError("No active profile found")

        active = await self.db.filter(UserProfile, {'is_active': True}, access)
        if len(active) != 1:
            self.stats['integrity_violations'] += 1
            raise IntegrityViolationError(
                f"Expected exactly one active profile, found {len(active)}",
                details={'active_count': len(active)}
            )
        return active[0]

    async def resolve_target_profile(self, owner: str, profile_id: Optional[str] = None) -> UserProfile:
        """Явно указанный профиль (с проверкой владельца) или активный"""
        if not profile_id:
            return await self.resolve_active_profile(owner)

        profile = await self.db.get(UserProfile, profile_id, Access.for_owner(owner))
        if profile is None:
            raise ProfileNotFoundError(
                "Profile not found or access denied",
                details={'profile_id': profile_id}
            )
        return profile

    # ------------------------------------------------------------------
    # Создание профилей
    # ------------------------------------------------------------------

    @staticmethod
    def _random_avatar(seed: str) -> str:
        return f"{random.choice(RANDOM_AVATARS)}{quote(seed)}"

    async def create_profile(
        self,
        owner: str,
        profile_name: Optional[str],
        make_active: bool = False,
        starting_balance: Optional[float] = None,
        open_commission: float = DEFAULT_COMMISSION,
        close_commission: float = DEFAULT_COMMISSION,
    ) -> UserProfile:
        """Новый профиль; создается неактивным, make_active идет через switch"""
        if not profile_name or not str(profile_name).strip():
            raise ValidationError("Profile name is required", next_step="Enter a valid profile name")

        access = Access.for_owner(owner)
        existing = await self.db.count(UserProfile, {}, access)
        limit = self.settings.MAX_PROFILES_PER_OWNER
        if existing >= limit:
            raise ProfileLimitReachedError(
                "Profile limit reached",
                details={'current_count': existing, 'max_allowed': limit}
            )

        if starting_balance is None:
            starting_balance = self.settings.DEFAULT_STARTING_BALANCE
        if starting_balance < 0:
            raise ValidationError("Starting balance must be non-negative")

        name = str(profile_name).strip()
        profile = await self.db.create(UserProfile, {
            'profile_name': name,
            'profile_image': self._random_avatar(f"{name}{int(time.time() * 1000)}"),
            'is_active': False,
            'starting_balance': starting_balance,
            'open_commission': open_commission,
            'close_commission': close_commission,
        }, access)

        self.logger.info(f"➕ Created profile '{name}' for {owner} ({existing + 1}/{limit})")

        if make_active:
            profile = await self.switch(owner, profile.id)
        return profile

    async def ensure_initial_profile(self, owner: str) -> Optional[UserProfile]:
        """
        Bootstrap при первом входе: один активный профиль со случайным именем

        Возвращает None, если у владельца уже есть профили.
        """
        access = Access.for_owner(owner)
        if await self.db.count(UserProfile, {}, access) > 0:
            return None

        base_name = random.choice(RANDOM_NAMES)
        number = random.randint(0, 998)
        profile_name = f"{base_name} {number}"

        profile = await self.db.create(UserProfile, {
            'profile_name': profile_name,
            'profile_image': self._random_avatar(f"{base_name}{number}"),
            'is_active': True,
            'starting_balance': self.settings.DEFAULT_STARTING_BALANCE,
            'open_commission': DEFAULT_COMMISSION,
            'close_commission': DEFAULT_COMMISSION,
        }, access)

        self.logger.info(f"🆕 Created first profile '{profile_name}' for {owner}")
        return profile

    # ------------------------------------------------------------------
    # Админский обход
    # ------------------------------------------------------------------

    async def repair_all(self, access: Access) -> RepairReport:
        """Ремонт профилей всех владельцев (только service role)"""
        if not access.privileged:
            raise ForbiddenError("Admin access required")

        report = RepairReport()
        profiles = await self.db.filter(UserProfile, {}, access)

        by_owner: Dict[str, List[UserProfile]] = {}
        for profile in profiles:
            if not profile.owner:
                report.orphaned_skipped += 1
                continue
            by_owner.setdefault(profile.owner, []).append(profile)

        limit = self.settings.MAX_PROFILES_PER_OWNER
        for owner, owned in sorted(by_owner.items()):
            report.owners_checked += 1

            if len(owned) > limit:
                report.over_limit_owners.append({'owner': owner, 'profile_count': len(owned)})

            state = classify(owned)
            if state not in (ProfileState.ZERO_ACTIVE, ProfileState.MULTI_ACTIVE):
                continue

            fix = await self.heal(owner)
            report.fixes.append(fix)
            if fix.state_before == ProfileState.MULTI_ACTIVE:
                report.multi_active_fixed += 1
            elif fix.state_before == ProfileState.ZERO_ACTIVE:
                report.zero_active_fixed += 1

        self.logger.info(
            f"🛠️ Profile repair finished: {report.owners_checked} owners, "
            f"{report.multi_active_fixed} multi-active fixed, "
            f"{report.zero_active_fixed} zero-active fixed, "
            f"{report.orphaned_skipped} orphaned skipped"
        )
        return report
