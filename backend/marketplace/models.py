from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["customer", "provider", "admin"]

Category = Literal["plumbing", "electrical", "beauty", "cleaning", "repair", "other"]

Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

BookingStatus = Literal["pending", "confirmed", "in-progress", "completed", "cancelled"]

PaymentStatus = Literal["requires_payment_method", "paid", "failed", "refunded"]


class Principal(BaseModel):
    user_id: str
    role: Role


class AvailabilityWindow(BaseModel):
    day: Weekday
    start_time: str
    end_time: str


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ServiceArea(BaseModel):
    radius: float = Field(gt=0)
    center: GeoPoint


class ListingRating(BaseModel):
    average: float = 0.0
    count: int = 0


class Listing(BaseModel):
    id: str
    name: str
    description: str
    category: Category
    price: Decimal
    duration: int
    provider_id: str
    availability: List[AvailabilityWindow] = Field(default_factory=list)
    service_area: Optional[ServiceArea] = None
    rating: ListingRating = Field(default_factory=ListingRating)
    is_active: bool = True
    images: List[str] = Field(default_factory=list)
    created_at: str
    distance_km: Optional[float] = None


class ListingSummary(BaseModel):
    id: str
    name: str
    description: str
    price: Decimal
    duration: int


class ListingCreateRequest(BaseModel):
    name: str
    description: str
    category: str
    price: Decimal
    duration: int
    availability: List[AvailabilityWindow] = Field(default_factory=list)
    service_area: Optional[ServiceArea] = None
    images: List[str] = Field(default_factory=list)


class ListingUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Decimal] = None
    duration: Optional[int] = None
    availability: Optional[List[AvailabilityWindow]] = None
    service_area: Optional[ServiceArea] = None
    clear_service_area: bool = False
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None


class BookingRating(BaseModel):
    score: int = Field(ge=1, le=5)
    review: str = ""
    created_at: str


class Booking(BaseModel):
    id: str
    customer_id: str
    listing_id: str
    provider_id: str
    scheduled_date: str
    scheduled_time: str
    address: str
    total_amount: Decimal
    notes: str = ""
    status: BookingStatus
    payment_status: PaymentStatus
    payment_id: Optional[str] = None
    rating: Optional[BookingRating] = None
    version: int = 1
    created_at: str
    updated_at: str
    listing: Optional[ListingSummary] = None


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_user_id: str
    field: Literal["status", "payment_status"]
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class BookingCreateRequest(BaseModel):
    listing_id: str
    scheduled_date: str
    scheduled_time: str
    address: str
    notes: str = ""


class BookingStatusUpdateRequest(BaseModel):
    status: str
    expected_version: Optional[int] = None
    note: str = ""


class BookingCancelRequest(BaseModel):
    expected_version: Optional[int] = None
    reason: str = ""


class RatingRequest(BaseModel):
    score: Any
    review: str = ""


class PaymentIntent(BaseModel):
    id: str
    amount: int
    currency: str
    status: PaymentStatus
    client_secret: str


class PaymentIntentRequest(BaseModel):
    booking_id: str


class ConfirmPaymentRequest(BaseModel):
    booking_id: str
    payment_intent_id: str
    payment_method_id: Optional[str] = None


class RefundRequest(BaseModel):
    booking_id: str
    reason: str = ""


class PaymentMethodCard(BaseModel):
    brand: str
    last4: str
    exp_month: int
    exp_year: int


class PaymentMethod(BaseModel):
    id: str
    type: Literal["card"] = "card"
    card: PaymentMethodCard


class PaymentStatusView(BaseModel):
    id: str
    listing: Optional[ListingSummary] = None
    total_amount: Decimal
    payment_status: PaymentStatus
    payment_id: Optional[str] = None
    status: BookingStatus


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str
    role: Role = "customer"


class AuthLoginResponse(BaseModel):
    success: bool = True
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: Role
    expires_at: str


class AuthMeResponse(BaseModel):
    success: bool = True
    user_id: str
    role: Role


class ListingEnvelope(BaseModel):
    success: bool = True
    message: Optional[str] = None
    service: Listing


class ListingListEnvelope(BaseModel):
    success: bool = True
    count: int
    services: List[Listing]


class BookingEnvelope(BaseModel):
    success: bool = True
    message: Optional[str] = None
    booking: Booking


class BookingListEnvelope(BaseModel):
    success: bool = True
    count: int
    bookings: List[Booking]


class BookingHistoryEnvelope(BaseModel):
    success: bool = True
    history: List[BookingStatusChange]


class PaymentIntentEnvelope(BaseModel):
    success: bool = True
    payment_intent: PaymentIntent
    publishable_key: str


class PaymentStatusEnvelope(BaseModel):
    success: bool = True
    booking: PaymentStatusView


class PaymentMethodsEnvelope(BaseModel):
    success: bool = True
    payment_methods: List[PaymentMethod]


class MessageEnvelope(BaseModel):
    success: bool = True
    message: str


class AdminDashboard(BaseModel):
    success: bool = True
    stats: Dict[str, int]
    recent_bookings: List[Booking]


class ListingStatusRequest(BaseModel):
    is_active: bool


class AdminListingPage(BaseModel):
    success: bool = True
    services: List[Listing]
    total_pages: int
    current_page: int
    total: int


class AdminBookingPage(BaseModel):
    success: bool = True
    bookings: List[Booking]
    total_pages: int
    current_page: int
    total: int
