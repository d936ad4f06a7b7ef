import re
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id format")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def find_or_404(collection, id_str: str, label: str) -> dict:
    doc = collection.find_one({"_id": oid(id_str)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def render(component: str, **props) -> Dict[str, Any]:
    """Page response consumed by the client-side renderer."""
    return {"component": component, "props": props}


def redirect(to: str, message: Optional[str] = None, level: str = "success", **extra) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": level == "success", "redirect": to}
    if message:
        out[level] = message
        out["message"] = message
    out.update(extra)
    return out


def slugify(value: str) -> str:
    value = re.sub(r"[^\w\s-]", "", value.lower()).strip()
    return re.sub(r"[\s_-]+", "-", value).strip("-")


def contains(term: str) -> dict:
    """Case-insensitive substring match for a user-typed search term."""
    return {"$regex": re.escape(term), "$options": "i"}


def money(value) -> float:
    return round(float(value or 0), 2)
