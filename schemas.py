"""
Database Schemas for the storefront and back-office

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase of the class name (e.g., ProductService -> "productservice").

References between collections are stored as string ids. Calendar dates
(service dates) are stored as ISO strings because BSON has no date-only type.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


USER_TYPES = ("customer", "admin", "manager", "service_provider")
ORDER_STATUSES = ("pending", "processing", "completed", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
COUPON_TYPES = ("percentage", "fixed_amount")
PROVIDER_STATUSES = ("available", "busy", "offline")
SCHEDULE_STATUSES = ("scheduled", "in_progress", "completed", "cancelled")
ATTRIBUTE_TYPES = ("text", "number", "select", "multiselect", "boolean")
INQUIRY_STATUSES = ("new", "in_progress", "resolved", "closed")


class User(BaseModel):
    """
    Users collection schema
    Collection: "user"
    """
    first_name: str
    last_name: str = ""
    email: str = Field(..., description="Login email, unique")
    phone: Optional[str] = None
    password_hash: str
    user_type: str = Field("customer", description="customer|admin|manager|service_provider")
    is_active: bool = True


class UserAddress(BaseModel):
    """
    Saved customer addresses
    Collection: "useraddress"
    """
    user_id: str
    type: str = Field("shipping", description="billing|shipping")
    first_name: str
    last_name: str = ""
    company: Optional[str] = None
    address_line_1: str
    address_line_2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "United Kingdom"
    phone: Optional[str] = None
    is_default: bool = False


class City(BaseModel):
    """
    Cities served by delivery and service providers
    Collection: "city"
    """
    name: str
    slug: str
    region: Optional[str] = None
    county: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class Area(BaseModel):
    """
    Areas (postcode districts) inside a city
    Collection: "area"
    """
    city_id: str
    name: str
    slug: str
    postcode: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class Category(BaseModel):
    """
    Product categories, optionally nested one level under a parent
    Collection: "category"
    """
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    sort_order: int = Field(0, ge=0)


class Brand(BaseModel):
    """
    Product brands
    Collection: "brand"
    """
    name: str
    slug: str
    description: Optional[str] = None
    website: Optional[str] = None
    is_active: bool = True
    sort_order: int = Field(0, ge=0)


class AttributeValue(BaseModel):
    """A ProductAttribute value set on one product, embedded in Product.attributes."""
    attribute_id: str
    value: str


class ServiceAssignment(BaseModel):
    """A ProductService offered with one product, embedded in Product.services."""
    service_id: str
    custom_price: Optional[float] = Field(None, ge=0)
    is_mandatory: bool = False
    is_free: bool = False


class Product(BaseModel):
    """
    Products collection schema
    Collection: "product"
    """
    name: str
    slug: str
    sku: str
    barcode: Optional[str] = None
    short_description: Optional[str] = None
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    stock_quantity: int = Field(0, ge=0)
    manage_stock: bool = True
    in_stock: bool = True
    low_stock_threshold: int = Field(5, ge=0)
    status: str = Field("active", description="active|inactive|draft")
    is_featured: bool = False
    brand_id: Optional[str] = None
    category_id: Optional[str] = None
    image: Optional[str] = None
    services: List[ServiceAssignment] = Field(default_factory=list)
    attributes: List[AttributeValue] = Field(default_factory=list)
    compatible_model_ids: List[str] = Field(default_factory=list)
    average_rating: float = Field(0, ge=0, le=5, description="Mean of approved reviews")
    reviews_count: int = Field(0, ge=0, description="Approved reviews")


class ProductService(BaseModel):
    """
    Add-on services (installation, disposal, ...) sold alongside products
    Collection: "productservice"
    """
    name: str
    slug: str
    description: Optional[str] = None
    type: str = "installation"
    price: float = Field(0, ge=0)
    is_optional: bool = True
    is_free: bool = False
    is_active: bool = True
    sort_order: int = 0


class Cart(BaseModel):
    """
    One cart line; owned by a user or by a guest session
    Collection: "cart"
    """
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    product_id: str
    quantity: int = Field(1, ge=1)
    selected_services: List[str] = Field(default_factory=list)


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection: "coupon"
    """
    code: str = Field(..., description="Upper-cased, human-entered code")
    name: str
    description: Optional[str] = None
    type: str = Field("percentage", description="percentage|fixed_amount")
    value: float = Field(..., ge=0)
    minimum_amount: Optional[float] = Field(None, ge=0)
    maximum_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = Field(0, ge=0)
    is_active: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class OrderItemService(BaseModel):
    service_id: str
    service_name: str
    price: float = Field(0, ge=0)


class OrderItem(BaseModel):
    """Snapshot of a product at purchase time, embedded in Order.items."""
    product_id: str
    product_name: str
    product_sku: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    selected_services: List[OrderItemService] = Field(default_factory=list)
    services_total: float = Field(0, ge=0)


class Order(BaseModel):
    """
    Orders collection schema
    Collection: "order"
    """
    order_number: str
    user_id: Optional[str] = None
    status: str = Field("pending", description="|".join(ORDER_STATUSES))
    payment_status: str = Field("pending", description="|".join(PAYMENT_STATUSES))
    payment_method: str
    payment_transaction_id: Optional[str] = None
    subtotal: float = Field(..., ge=0)
    total_services_amount: float = Field(0, ge=0)
    tax_amount: float = Field(0, ge=0)
    shipping_amount: float = Field(0, ge=0)
    discount_amount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    billing_address: Dict = Field(default_factory=dict)
    shipping_address: Dict = Field(default_factory=dict)
    notes: Optional[str] = None
    items: List[OrderItem]
    source: str = Field("storefront", description="storefront|pos")
    preferred_service_date: Optional[str] = None
    service_time_slot: Optional[str] = None
    service_instructions: Optional[str] = None
    service_provider_id: Optional[str] = None
    service_provider_charge: Optional[float] = None
    service_provider_status: Optional[str] = None
    assigned_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class OrderPayment(BaseModel):
    """
    Payment records against an order
    Collection: "orderpayment"
    """
    order_id: str
    amount: float = Field(..., ge=0)
    payment_method: str
    transaction_id: Optional[str] = None
    status: str = "pending"
    notes: Optional[str] = None


class ServiceProviderCategory(BaseModel):
    """
    Kinds of service providers (installer, electrician, ...)
    Collection: "serviceprovidercategory"
    """
    name: str
    slug: str
    is_active: bool = True
    sort_order: int = 0


class ProviderService(BaseModel):
    """A ProductService a provider can perform, embedded in ServiceProvider.services."""
    service_id: str
    custom_price: Optional[float] = Field(None, ge=0)
    experience_level: str = Field("intermediate", description="beginner|intermediate|expert")
    is_active: bool = True


class ServiceProvider(BaseModel):
    """
    Staff who fulfil scheduled product services
    Collection: "serviceprovider"
    """
    user_id: str
    category_id: Optional[str] = None
    city_id: str
    area_id: str
    business_name: Optional[str] = None
    description: Optional[str] = None
    service_charge: float = Field(0, ge=0)
    contact_number: Optional[str] = None
    email: Optional[str] = None
    availability_status: str = Field("available", description="available|busy|offline")
    max_daily_orders: int = Field(5, ge=1, le=50)
    current_daily_orders: int = Field(0, ge=0)
    rating: float = Field(5.0, ge=0, le=5)
    total_reviews: int = 0
    total_jobs_completed: int = 0
    is_active: bool = True
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    working_hours: Optional[Dict[str, Dict]] = None
    avg_service_duration: int = Field(60, ge=1)
    min_advance_booking_hours: int = Field(24, ge=0)
    services: List[ProviderService] = Field(default_factory=list)


class ServiceProviderSchedule(BaseModel):
    """
    Bookings on a provider's calendar
    Collection: "serviceproviderschedule"
    """
    service_provider_id: str
    order_id: Optional[str] = None
    service_date: str = Field(..., description="YYYY-MM-DD")
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    time_slot: Optional[str] = None
    status: str = Field("scheduled", description="|".join(SCHEDULE_STATUSES))
    notes: Optional[str] = None


class VisitorSession(BaseModel):
    """
    Server-side state for a visitor (guest session id or user id)
    Collection: "visitorsession"
    """
    key: str
    applied_coupon: Optional[Dict] = None


class Webhook(BaseModel):
    """
    Registered webhook endpoints for order events
    Collection: "webhook"
    """
    url: str
    events: List[str] = Field(default_factory=list)
    active: bool = Field(True)


class ProductAttribute(BaseModel):
    """
    Product attribute definitions (voltage, colour, ...)
    Collection: "productattribute"
    """
    name: str
    slug: str
    type: str = Field("text", description="|".join(ATTRIBUTE_TYPES))
    is_required: bool = False
    is_filterable: bool = False
    sort_order: int = Field(0, ge=0)


class CompatibleModel(BaseModel):
    """
    Appliance models a product fits
    Collection: "compatiblemodel"
    """
    brand_name: str
    model_name: str
    model_code: Optional[str] = None
    year_from: Optional[int] = None
    year_to: Optional[int] = None
    is_active: bool = True


class Wishlist(BaseModel):
    """
    Products a customer saved for later
    Collection: "wishlist"
    """
    user_id: str
    product_id: str


class ProductReview(BaseModel):
    """
    Customer product reviews; only approved ones are published
    Collection: "productreview"
    """
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: Optional[str] = None
    is_approved: bool = False


class ContactInquiry(BaseModel):
    """
    Messages sent through the contact form
    Collection: "contactinquiry"
    """
    name: str
    email: str
    phone: Optional[str] = None
    subject: str
    message: str
    status: str = Field("new", description="|".join(INQUIRY_STATUSES))
    admin_notes: Optional[str] = None


class Setting(BaseModel):
    """
    Store-wide key/value settings
    Collection: "setting"
    """
    key: str
    value: str
    group: str = "general"
