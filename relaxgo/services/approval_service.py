from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

from relaxgo.core.config import settings
from relaxgo.core.exceptions import (
    ConsistencyGapError,
    InvalidTransitionError,
    MissingReferenceError,
    RelaxGoError,
    TransientIOError,
    ValidationError,
)
from relaxgo.core.logger import logger
from relaxgo.core.security import AuthorizationContext
from relaxgo.models.db_models import ApplicationProfile, ApplicationStatus, MasseurApplication
from relaxgo.services.identity_service import ADMIN, PROVIDER, IdentityService
from relaxgo.services.store import Order, RowFilter, Store

SEARCH_FIELDS = ("first_name", "last_name", "phone", "bio")


@dataclass
class RepairReport:
    granted: List[str] = field(default_factory=list)
    revoked: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.granted or self.revoked)


class ApprovalService:
    """
    Provider application lifecycle: pending -> approved | rejected.

    Approval and rejection are two writes (application status, then the
    'provider' capability) that cannot share a transaction. When the second
    write fails the caller gets ConsistencyGapError, and repair_capabilities()
    closes the gap on the next administrative load.
    """

    def __init__(self, store: Store, identity_service: IdentityService,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.identity_service = identity_service
        self._clock = clock

    def now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(ZoneInfo(settings.TIMEZONE))

    async def get_application(self, masseur_id: str) -> Optional[MasseurApplication]:
        rows = await self.store.select("masseuses", RowFilter().eq("masseuse_id", masseur_id))
        return MasseurApplication.from_row(rows[0]) if rows else None

    async def _require_application(self, masseur_id: str) -> MasseurApplication:
        application = await self.get_application(masseur_id)
        if application is None:
            raise MissingReferenceError("Application", masseur_id)
        return application

    async def submit_application(self, masseur_id: str, profile: ApplicationProfile) -> MasseurApplication:
        """
        File an application. A rejected application is superseded and the
        cycle restarts at pending.
        """
        existing = await self.get_application(masseur_id)
        fields = profile.model_dump()
        fields.update({
            "status": ApplicationStatus.PENDING.value,
            "submitted_at": self.now().isoformat(),
        })

        if existing is None:
            row = await self.store.insert("masseuses", {"masseuse_id": masseur_id, **fields})
            logger.info(f"🆕 New masseur application: {masseur_id}")
            return MasseurApplication.from_row(row)

        if existing.status != ApplicationStatus.REJECTED:
            raise InvalidTransitionError(existing.status.value, ApplicationStatus.PENDING.value,
                                         "application already submitted")

        affected = await self.store.update(
            "masseuses",
            RowFilter().eq("masseuse_id", masseur_id).eq("status", ApplicationStatus.REJECTED),
            fields,
        )
        if affected == 0:
            raise InvalidTransitionError(existing.status.value, ApplicationStatus.PENDING.value,
                                         "application changed concurrently")
        logger.info(f"♻️ Rejected application {masseur_id} superseded by a new one")
        return await self._require_application(masseur_id)

    async def _set_status(self, application: MasseurApplication, allowed_from: Iterable[ApplicationStatus],
                          target: ApplicationStatus) -> MasseurApplication:
        if application.status not in set(allowed_from):
            raise InvalidTransitionError(application.status.value, target.value)
        affected = await self.store.update(
            "masseuses",
            RowFilter().eq("masseuse_id", application.masseuse_id).eq("status", application.status),
            {"status": target.value},
        )
        if affected == 0:
            raise InvalidTransitionError(application.status.value, target.value,
                                         "application changed concurrently")
        logger.info(f"📋 Application {application.masseuse_id}: {application.status.value} -> {target.value}")
        return application.model_copy(update={"status": target})

    async def approve(self, admin_ctx: AuthorizationContext, masseur_id: str) -> MasseurApplication:
        admin_ctx.require(ADMIN)
        application = await self._require_application(masseur_id)
        approved = await self._set_status(application, {ApplicationStatus.PENDING}, ApplicationStatus.APPROVED)

        try:
            await self.identity_service.grant_capability(masseur_id, PROVIDER)
        except RelaxGoError as e:
            logger.error(f"❌ CONSISTENCY GAP: {masseur_id} approved but '{PROVIDER}' grant failed: {e}")
            raise ConsistencyGapError(masseur_id, ApplicationStatus.APPROVED.value, PROVIDER) from e
        return approved

    async def reject(self, admin_ctx: AuthorizationContext, masseur_id: str) -> MasseurApplication:
        """
        Reject a pending application or withdraw an approval. Revoking a
        capability that was never granted is a no-op.
        """
        admin_ctx.require(ADMIN)
        application = await self._require_application(masseur_id)
        rejected = await self._set_status(
            application, {ApplicationStatus.PENDING, ApplicationStatus.APPROVED}, ApplicationStatus.REJECTED
        )

        try:
            await self.identity_service.revoke_capability(masseur_id, PROVIDER)
        except RelaxGoError as e:
            logger.error(f"❌ CONSISTENCY GAP: {masseur_id} rejected but '{PROVIDER}' revoke failed: {e}")
            raise ConsistencyGapError(masseur_id, ApplicationStatus.REJECTED.value, PROVIDER) from e
        return rejected

    async def repair_capabilities(self) -> RepairReport:
        """
        Idempotent pass aligning capabilities with application status:
        approved rows must hold 'provider', rejected rows must not.
        """
        report = RepairReport()
        rows = await self.store.select(
            "masseuses",
            RowFilter().in_("status", (ApplicationStatus.APPROVED, ApplicationStatus.REJECTED)),
        )
        for row in rows:
            application = MasseurApplication.from_row(row)
            masseur_id = application.masseuse_id
            try:
                capabilities = await self.identity_service.get_capabilities(masseur_id)
                if application.status == ApplicationStatus.APPROVED and PROVIDER not in capabilities:
                    await self.identity_service.grant_capability(masseur_id, PROVIDER)
                    report.granted.append(masseur_id)
                elif application.status == ApplicationStatus.REJECTED and PROVIDER in capabilities:
                    await self.identity_service.revoke_capability(masseur_id, PROVIDER)
                    report.revoked.append(masseur_id)
            except (TransientIOError, MissingReferenceError) as e:
                logger.error(f"❌ Repair of {masseur_id} failed, will retry on next load: {e}")
                report.failed.append(masseur_id)

        if report.changed:
            logger.warning(f"🛠️ Repaired capabilities: granted={report.granted} revoked={report.revoked}")
        return report

    async def list_applications(self, admin_ctx: AuthorizationContext,
                                status: Optional[Union[str, ApplicationStatus]] = None,
                                search: Optional[str] = None) -> List[MasseurApplication]:
        """Administrative load: repairs first, then lists applications newest first."""
        admin_ctx.require(ADMIN)
        await self.repair_capabilities()

        row_filter = RowFilter()
        if status:
            try:
                row_filter = row_filter.eq("status", ApplicationStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown application status: {status!r}") from None
        rows = await self.store.select("masseuses", row_filter, order_by=Order("submitted_at", desc=True))
        applications = [MasseurApplication.from_row(r) for r in rows]

        if search:
            term = search.lower()
            applications = [
                a for a in applications
                if any(term in (getattr(a, f) or "").lower() for f in SEARCH_FIELDS)
            ]
        return applications

    async def discover_providers(self) -> List[MasseurApplication]:
        """Providers visible to customers: approved applications only."""
        rows = await self.store.select(
            "masseuses", RowFilter().eq("status", ApplicationStatus.APPROVED)
        )
        return [MasseurApplication.from_row(r) for r in rows]
