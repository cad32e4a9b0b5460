from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from typing import List

from relaxgo.core.exceptions import AuthorizationError
from relaxgo.core.security import AuthorizationContext, get_authorization_context
from relaxgo.models.db_models import Booking, BookingStatus
from relaxgo.services.booking_service import BookingService
from relaxgo.services.identity_service import CUSTOMER, PROVIDER

router = APIRouter()


def get_booking_service(request: Request) -> BookingService:
    return request.app.state.booking_service


class CreateBookingRequest(BaseModel):
    masseur_id: str
    massage_type_id: str
    day: str
    time: str
    duration_minutes: int = 60


@router.post("/bookings", response_model=Booking, status_code=201)
async def create_booking(req: CreateBookingRequest,
                         ctx: AuthorizationContext = Depends(get_authorization_context),
                         booking_service: BookingService = Depends(get_booking_service)):
    ctx.require(CUSTOMER)
    return await booking_service.create(
        ctx.identity_id, req.masseur_id, req.massage_type_id, req.day, req.time, req.duration_minutes
    )


@router.get("/bookings", response_model=List[Booking])
async def list_my_bookings(ctx: AuthorizationContext = Depends(get_authorization_context),
                           booking_service: BookingService = Depends(get_booking_service)):
    return await booking_service.list_for_customer(ctx.identity_id)


@router.get("/bookings/{booking_id}", response_model=Booking)
async def get_booking(booking_id: str,
                      ctx: AuthorizationContext = Depends(get_authorization_context),
                      booking_service: BookingService = Depends(get_booking_service)):
    booking = await booking_service.get(booking_id)
    if ctx.identity_id not in (booking.customer_id, booking.masseur_id) and not ctx.is_admin:
        raise AuthorizationError("Not a party to this booking")
    return booking


@router.post("/bookings/{booking_id}/confirm", response_model=Booking)
async def confirm_booking(booking_id: str,
                          ctx: AuthorizationContext = Depends(get_authorization_context),
                          booking_service: BookingService = Depends(get_booking_service)):
    return await booking_service.transition(booking_id, ctx, BookingStatus.CONFIRMED)


@router.post("/bookings/{booking_id}/decline", response_model=Booking)
async def decline_booking(booking_id: str,
                          ctx: AuthorizationContext = Depends(get_authorization_context),
                          booking_service: BookingService = Depends(get_booking_service)):
    return await booking_service.transition(booking_id, ctx, BookingStatus.DECLINED)


@router.get("/provider/bookings", response_model=List[Booking])
async def provider_working_set(ctx: AuthorizationContext = Depends(get_authorization_context),
                               booking_service: BookingService = Depends(get_booking_service)):
    ctx.require(PROVIDER)
    return await booking_service.working_set(ctx.identity_id)
