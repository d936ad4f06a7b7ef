import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, EmailStr, Field

from database import create_document, get_documents
from helpers import redirect, render
from schemas import ContactInquiry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contact", tags=["contact"])


class InquiryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    subject: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=5000)


@router.get("")
def index():
    details = {s["key"]: s["value"] for s in get_documents("setting", {"group": "contact"})}
    return render("Contact/Index", contact=details)


@router.post("")
def store(payload: InquiryRequest):
    inquiry_id = create_document("contactinquiry", ContactInquiry(**payload.model_dump()))
    logger.info("Contact inquiry %s received", inquiry_id)
    return redirect("/contact", "Thank you for your message. We will get back to you soon.", id=inquiry_id)
