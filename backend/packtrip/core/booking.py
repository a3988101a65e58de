"""
Booking orchestration.

``BookingOrchestrator.create_booking`` turns a validated request into one
atomic unit of work: resolve the package, price it, claim the requested
rewards, persist the booking with its reward rows and first log entry, then
commit. Notifications and the payment session happen only after the commit,
so neither can undo a booking.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.core import pricing
from packtrip.core.errors import (
    ConflictError,
    DomainError,
    GatewayError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
    FieldError,
)
from packtrip.core.notifications import EventKind, NotificationOutbox, OutboundEvent, Recipient
from packtrip.core.payments import LineItem, PaymentCustomer, PaymentGateway
from packtrip.core.rewards import final_price, select_rewards
from packtrip.core.security import Actor
from packtrip.core.settings import Settings, get_settings
from packtrip.core.validation import validate_booking_request
from packtrip.db import crud
from packtrip.db.models import (
    Booking,
    BookingReward,
    BookingStatus,
    PackageType,
    PaymentTransaction,
    Reward,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
    utcnow,
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 5


@dataclass
class BookingRequest:
    package_type: PackageType
    package_id: UUID
    quantity: int
    start_date: Optional[date]
    end_date: Optional[date] = None
    notes: Optional[str] = None
    reward_ids: List[UUID] = field(default_factory=list)


@dataclass
class PaymentSessionResult:
    """Outcome of asking the gateway for a checkout session"""
    status: str  # created | failed | not_required
    gateway_reference: Optional[str] = None
    session_token: Optional[str] = None
    redirect_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BookingResult:
    booking: Booking
    payment_session: PaymentSessionResult
    applied_rewards: List[BookingReward] = field(default_factory=list)


def generate_booking_code(prefix: str = "BK") -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{prefix}-{suffix}"


def generate_gateway_reference(booking_code: str) -> str:
    """Each payment attempt needs its own order id at the gateway"""
    return f"{booking_code}-{secrets.token_hex(3).upper()}"


def recipient_for(user: User) -> Recipient:
    return Recipient(user_id=user.id, email=user.email, name=user.name, fcm_token=user.fcm_token)


def ensure_can_view(actor: Actor, booking: Booking) -> None:
    if actor.is_staff or booking.user_id == actor.user_id:
        return
    raise PermissionDeniedError("You do not have access to this booking")


async def load_booking_for(session: AsyncSession, actor: Actor, booking_id: UUID) -> Booking:
    """Fetch a booking the caller is allowed to see"""
    booking = await crud.get_booking_by_id(session, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    ensure_can_view(actor, booking)
    return booking


class BookingOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        outbox: NotificationOutbox,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.gateway = gateway
        self.outbox = outbox
        self.settings = settings or get_settings()
        self.clock = clock

    # ----- unit of work helpers -----

    async def _commit(self, context: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to commit {context}: {e}")
            raise StorageError(f"Could not save {context}") from e

    async def _rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")

    async def _unique_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_booking_code(self.settings.BOOKING_CODE_PREFIX)
            if await crud.get_booking_by_code(self.session, code) is None:
                return code
        raise StorageError("Could not allocate a unique booking code")

    # ----- create -----

    async def create_booking(self, actor: Actor, request: BookingRequest) -> BookingResult:
        """Create a pending booking and open its payment session"""
        now = self.clock()
        errors = validate_booking_request(
            request,
            today=now.date(),
            notes_max_length=self.settings.BOOKING_NOTES_MAX_LENGTH,
        )
        if errors:
            raise ValidationError(errors)

        try:
            booking, user, package, claimed = await self._persist_booking(actor, request, now)
        except DomainError:
            await self._rollback()
            raise
        except SQLAlchemyError as e:
            await self._rollback()
            logger.error(f"Database error while creating booking for user {actor.user_id}: {e}")
            raise StorageError("Could not create booking") from e

        logger.info(
            f"Booking {booking.code} created for user {actor.user_id}: "
            f"total={booking.total_price} rewards={booking.reward_total_applied} final={booking.final_price}"
        )
        await self._notify_created(booking, user)

        if booking.status == BookingStatus.CONFIRMED:
            self._notify_paid_with_rewards(booking, user)
            payment_session = PaymentSessionResult(status="not_required")
        else:
            try:
                payment_session = await self._open_session(booking, user, package)
            except StorageError as e:
                # the booking itself is committed; the customer can retry payment later
                payment_session = PaymentSessionResult(status="failed", error=e.message)
        return BookingResult(booking=booking, payment_session=payment_session, applied_rewards=claimed)

    async def _persist_booking(self, actor: Actor, request: BookingRequest, now: datetime):
        package_type = PackageType(request.package_type)

        user = await crud.get_user_by_id(self.session, actor.user_id)
        if user is None:
            raise NotFoundError("User not found")

        package = await crud.get_package(self.session, package_type, request.package_id)
        if package is None:
            raise NotFoundError(f"{package_type.value.capitalize()} package not found")

        price = pricing.quote(package_type, package, request.quantity, request.start_date, request.end_date)
        await self._check_availability(package_type, package, request, price.end_date)

        rewards = await self._requested_rewards(actor, request.reward_ids)
        selection = select_rewards(rewards, actor.user_id, package_type, price.total_price, now)
        for reward in selection.rejected:
            logger.info(f"Reward {reward.id} not applicable to {package_type.value} booking, skipped")

        # Compare-and-set claim; a reward spent by a concurrent booking drops out here
        claimed: List[Reward] = []
        for reward in selection.applied:
            if await crud.claim_reward(self.session, reward.id, now):
                claimed.append(reward)
            else:
                logger.warning(f"Reward {reward.id} was claimed concurrently, not applied")

        reward_total = sum((Decimal(r.amount) for r in claimed), Decimal("0"))
        booking = Booking(
            code=await self._unique_code(),
            user_id=actor.user_id,
            package_type=package_type,
            package_id=package.id,
            quantity=request.quantity,
            start_date=request.start_date,
            end_date=price.end_date,
            unit_price_at_booking=price.unit_price,
            total_price=price.total_price,
            reward_total_applied=reward_total,
            final_price=final_price(price.total_price, reward_total),
            notes=request.notes,
            status=BookingStatus.PENDING,
        )
        self.session.add(booking)
        await self.session.flush()

        links = []
        for reward in claimed:
            link = BookingReward(booking_id=booking.id, reward_id=reward.id, applied_amount=reward.amount)
            self.session.add(link)
            links.append(link)
        crud.append_booking_log(
            self.session, booking.id, None, BookingStatus.PENDING,
            user_id=actor.user_id, notes="Booking created",
        )
        await self.session.flush()

        if booking.final_price == 0:
            await self._settle_with_rewards(actor, booking, now)

        await self._commit(f"booking {booking.code}")
        return booking, user, package, links

    async def _requested_rewards(self, actor: Actor, reward_ids: List[UUID]) -> List[Reward]:
        if not reward_ids:
            return []
        rewards = await crud.get_user_rewards_by_ids(self.session, actor.user_id, reward_ids)
        owned = {r.id for r in rewards}
        unknown = [rid for rid in reward_ids if rid not in owned]
        if unknown:
            raise ValidationError([
                FieldError("reward_ids", f"Reward {rid} does not belong to you.") for rid in unknown
            ])
        return rewards

    async def _check_availability(
        self,
        package_type: PackageType,
        package: Any,
        request: BookingRequest,
        end_date: Optional[date],
    ) -> None:
        if not package.is_available:
            raise ValidationError.single("package_id", "This package is currently not available.")

        min_persons = getattr(package, "min_persons", None)
        if package_type in (PackageType.TOUR, PackageType.ACTIVITY) and min_persons and request.quantity < min_persons:
            raise ValidationError.single("quantity", f"This package requires at least {min_persons} persons.")

        if package_type in (PackageType.TOUR, PackageType.RENTAL):
            overlapping = await crud.has_overlapping_booking(
                self.session, package_type, package.id, request.start_date, end_date or request.start_date
            )
            if overlapping:
                raise ValidationError.single("start_date", "The package is already booked for the selected dates.")

    async def _settle_with_rewards(self, actor: Actor, booking: Booking, now: datetime) -> None:
        """Rewards cover the whole price: record the payment and confirm on the spot"""
        self.session.add(PaymentTransaction(
            booking_id=booking.id,
            type=TransactionType.PAYMENT,
            amount=Decimal("0"),
            method="reward",
            status=TransactionStatus.SUCCESS,
            gateway_reference=None,
            notes="Fully covered by rewards",
            confirmed_at=now,
            confirmed_by=actor.user_id,
        ))
        await crud.transition_booking(
            self.session, booking, BookingStatus.CONFIRMED,
            user_id=actor.user_id, notes="Paid with rewards",
        )

    # ----- payment session -----

    def _line_items(self, booking: Booking, package: Any) -> List[LineItem]:
        units = booking.quantity
        if PackageType(booking.package_type) == PackageType.RENTAL and booking.end_date:
            units = pricing.rental_days(booking.start_date, booking.end_date)
        items = [LineItem(
            id=str(booking.package_id),
            name=package.name if package is not None else booking.code,
            price=Decimal(booking.unit_price_at_booking),
            quantity=units,
        )]
        discount = Decimal(booking.total_price) - Decimal(booking.final_price)
        if discount > 0:
            items.append(LineItem(id="REWARDS", name="Reward discount", price=-discount))
        return items

    async def _record_attempt(self, transaction: PaymentTransaction, **values) -> None:
        """Store the gateway's answer unless a webhook already moved the transaction on"""
        try:
            await crud.update_transaction_if_status(
                self.session, transaction, TransactionStatus.PENDING, **values
            )
        except SQLAlchemyError as e:
            await self._rollback()
            logger.error(f"Failed to record payment attempt {transaction.gateway_reference}: {e}")
            raise StorageError("Could not record payment attempt") from e
        await self._commit(f"payment transaction {transaction.gateway_reference}")

    async def _open_session(self, booking: Booking, user: User, package: Any) -> PaymentSessionResult:
        reference = generate_gateway_reference(booking.code)
        transaction = PaymentTransaction(
            booking_id=booking.id,
            type=TransactionType.PAYMENT,
            amount=booking.final_price,
            status=TransactionStatus.PENDING,
            gateway_reference=reference,
        )
        self.session.add(transaction)
        await self._commit(f"payment transaction {reference}")

        customer = PaymentCustomer(name=user.name, email=user.email, phone=user.phone)
        try:
            remote = await self.gateway.create_session(
                reference, Decimal(booking.final_price), customer, self._line_items(booking, package)
            )
        except GatewayError as e:
            logger.error(f"Payment session for booking {booking.code} failed: {e.message}")
            await self._record_attempt(
                transaction,
                status=TransactionStatus.FAILED,
                notes=e.message,
                raw_response={"error": e.message, "status": e.status, "body": e.body},
            )
            return PaymentSessionResult(status="failed", gateway_reference=reference, error=e.message)

        await self._record_attempt(
            transaction,
            raw_response={"token": remote.session_token, "redirect_url": remote.redirect_url},
        )
        return PaymentSessionResult(
            status="created",
            gateway_reference=reference,
            session_token=remote.session_token,
            redirect_url=remote.redirect_url,
        )

    async def open_payment_session(self, actor: Actor, booking_id: UUID) -> PaymentSessionResult:
        """Start a new payment attempt for a booking that is still pending"""
        booking = await load_booking_for(self.session, actor, booking_id)
        if BookingStatus(booking.status) != BookingStatus.PENDING:
            raise ValidationError.single("status", "Only pending bookings can be paid.")

        user = await crud.get_user_by_id(self.session, booking.user_id)
        if user is None:
            raise NotFoundError("User not found")
        package = await crud.get_package(self.session, booking.package_type, booking.package_id)
        return await self._open_session(booking, user, package)

    # ----- status changes -----

    async def cancel_booking(self, actor: Actor, booking_id: UUID, reason: Optional[str] = None) -> Booking:
        """Customer cancel of their own pending booking"""
        booking = await crud.get_booking_by_id(self.session, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if booking.user_id != actor.user_id:
            raise PermissionDeniedError("You can only cancel your own bookings")
        if BookingStatus(booking.status) != BookingStatus.PENDING:
            raise ValidationError.single("status", "Only pending bookings can be cancelled.")

        await self._apply_transition(actor, booking, BookingStatus.CANCELLED, reason or "Cancelled by customer")
        logger.info(f"Booking {booking.code} cancelled by customer {actor.user_id}")
        return booking

    async def update_status(
        self,
        actor: Actor,
        booking_id: UUID,
        new_status: BookingStatus,
        notes: Optional[str] = None,
    ) -> Booking:
        """Admin/owner status change, subject to the transition rules"""
        if not actor.is_staff:
            raise PermissionDeniedError("Only staff can change booking status")
        booking = await crud.get_booking_by_id(self.session, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")

        new_status = BookingStatus(new_status)
        current = BookingStatus(booking.status)
        if not booking.can_transition_to(new_status):
            raise ValidationError.single(
                "status", f"Cannot change status from {current.value} to {new_status.value}."
            )

        await self._apply_transition(actor, booking, new_status, notes or f"Status changed by {actor.role.value}")
        logger.info(f"Booking {booking.code} moved {current.value} -> {new_status.value} by {actor.user_id}")
        return booking

    async def _apply_transition(self, actor: Actor, booking: Booking, new_status: BookingStatus, notes: str) -> None:
        try:
            changed = await crud.transition_booking(
                self.session, booking, new_status, user_id=actor.user_id, notes=notes
            )
            if not changed:
                raise ConflictError(f"Booking {booking.code} was modified concurrently")
            if new_status == BookingStatus.CANCELLED:
                released = await crud.release_booking_rewards(self.session, booking.id)
                if released:
                    logger.info(f"Released {released} reward(s) from booking {booking.code}")
        except DomainError:
            await self._rollback()
            raise
        except SQLAlchemyError as e:
            await self._rollback()
            logger.error(f"Database error while updating booking {booking.code}: {e}")
            raise StorageError("Could not update booking") from e
        await self._commit(f"booking {booking.code}")

        owner = await crud.get_user_by_id(self.session, booking.user_id)
        if owner is not None:
            kind = EventKind.BOOKING_CANCELLED if new_status == BookingStatus.CANCELLED else EventKind.BOOKING_STATUS_CHANGED
            self.outbox.publish([OutboundEvent(
                kind=kind,
                recipients=[recipient_for(owner)],
                subject=f"Booking {booking.code} is now {new_status.value}",
                body=notes,
                data={"booking_code": booking.code, "status": new_status.value},
            )])

    # ----- notifications -----

    async def _notify_created(self, booking: Booking, customer: User) -> None:
        """Customer receipt plus a heads-up to owners and admins; never fails the booking"""
        try:
            stakeholders = await crud.get_users_by_roles(self.session, [UserRole.OWNER, UserRole.ADMIN])
        except SQLAlchemyError as e:
            logger.error(f"Could not load stakeholders for booking {booking.code}: {e}")
            stakeholders = []

        data = {
            "booking_code": booking.code,
            "package_type": PackageType(booking.package_type).value,
            "final_price": str(booking.final_price),
        }
        self.outbox.publish([
            OutboundEvent(
                kind=EventKind.BOOKING_CREATED,
                recipients=[recipient_for(customer)],
                subject=f"Your booking {booking.code}",
                body=f"We received your booking {booking.code}. Total due: {booking.final_price}.",
                data=data,
            ),
            OutboundEvent(
                kind=EventKind.BOOKING_CREATED,
                recipients=[recipient_for(u) for u in stakeholders if u.id != customer.id],
                subject=f"New booking {booking.code}",
                body=f"{customer.name} booked a {data['package_type']} package.",
                data=data,
            ),
        ])

    def _notify_paid_with_rewards(self, booking: Booking, customer: User) -> None:
        self.outbox.publish([
            OutboundEvent(
                kind=EventKind.PAYMENT_CONFIRMED,
                recipients=[recipient_for(customer)],
                subject=f"Payment received for {booking.code}",
                body=f"Your booking {booking.code} was paid in full with rewards and is confirmed.",
                data={"booking_code": booking.code, "status": BookingStatus.CONFIRMED.value},
            ),
        ])
