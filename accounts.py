"""
User accounts and per-user settings

Settings live in their own collection (one document per user) and are
mirrored into ``users.settings`` so login/profile responses carry them.
Both copies are merged field by field: a key missing from an update keeps
its stored value.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import SETTINGS, USERS
from exceptions import (
    AuthenticationError,
    DuplicateRecordError,
    ResourceNotFoundError,
    ValidationError,
)
from logging_config import logger
from schemas import UserSettings
from security import create_access_token, get_password_hash, verify_password

SETTINGS_SECTIONS = ("notifications", "privacy", "appearance")
ROLES = ("admin", "user")


def default_settings() -> Dict[str, Dict[str, Any]]:
    return UserSettings().model_dump(by_alias=True)


def merge_settings(current: Optional[Mapping[str, Any]],
                   patch: Optional[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """defaults <- stored values <- patch values (None in the patch means 'unchanged')"""
    defaults = default_settings()
    current = current if isinstance(current, Mapping) else {}
    patch = patch or {}

    merged = {}
    for section in SETTINGS_SECTIONS:
        values = dict(defaults[section])
        stored = current.get(section)
        if isinstance(stored, Mapping):
            values.update({k: v for k, v in stored.items() if k in values})
        changes = patch.get(section)
        if isinstance(changes, Mapping):
            values.update({k: v for k, v in changes.items() if k in values and v is not None})
        merged[section] = values
    return merged


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def public_user(user: Mapping[str, Any], with_token: bool = False) -> Dict[str, Any]:
    data = {
        "id": str(user["_id"]),
        "name": user.get("name", ""),
        "email": user.get("email", ""),
        "role": user.get("role", "user"),
        "settings": merge_settings(user.get("settings"), None),
    }
    if with_token:
        data["token"] = create_access_token(data["id"], data["role"])
    return data


def _validate_password(password: str, field: str = "password") -> None:
    if not password or len(password) < settings.MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Please enter a password with {settings.MIN_PASSWORD_LENGTH} or more characters",
            field=field,
        )


def _email_taken(db: Database, email: str, exclude_id: Optional[ObjectId] = None) -> bool:
    query: Dict[str, Any] = {"email": email}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db[USERS].find_one(query, {"_id": 1}) is not None


# ------------------------------ Accounts ------------------------------

def register_user(db: Database, name: str, email: str, password: str) -> Dict[str, Any]:
    name = (name or "").strip()
    email = normalize_email(email)
    if not name:
        raise ValidationError("Name is required", field="name")
    if not email:
        raise ValidationError("Please include a valid email", field="email")
    _validate_password(password)

    role = settings.DEFAULT_USER_ROLE if settings.DEFAULT_USER_ROLE in ROLES else "user"

    if _email_taken(db, email):
        raise DuplicateRecordError("User already exists", field="email")

    doc = {
        "name": name,
        "email": email,
        "password": get_password_hash(password),
        "role": role,
        "settings": default_settings(),
        "createdAt": datetime.now(timezone.utc),
    }
    try:
        result = db[USERS].insert_one(doc)
    except DuplicateKeyError:
        raise DuplicateRecordError("User already exists", field="email")

    doc["_id"] = result.inserted_id
    logger.log_auth_event("register", True, user_email=email)
    return public_user(doc, with_token=True)


def authenticate_user(db: Database, email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    user = db[USERS].find_one({"email": email})
    if not user or not verify_password(password or "", user.get("password", "")):
        logger.log_auth_event("login", False, user_email=email, reason="invalid credentials")
        raise AuthenticationError("Invalid email or password")

    logger.log_auth_event("login", True, user_email=email)
    return public_user(user, with_token=True)


def update_profile(db: Database, user: Mapping[str, Any], name: Optional[str] = None,
                   email: Optional[str] = None, password: Optional[str] = None) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if name and name.strip():
        changes["name"] = name.strip()
    if email and normalize_email(email):
        new_email = normalize_email(email)
        if new_email != user.get("email"):
            if _email_taken(db, new_email, exclude_id=user["_id"]):
                raise DuplicateRecordError("Email is already in use", field="email")
            changes["email"] = new_email
    if password:
        _validate_password(password)
        changes["password"] = get_password_hash(password)

    if changes:
        try:
            db[USERS].update_one({"_id": user["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise DuplicateRecordError("Email is already in use", field="email")

    return public_user({**user, **changes}, with_token=True)


def change_password(db: Database, user: Mapping[str, Any], current_password: str,
                    new_password: str) -> None:
    if not verify_password(current_password or "", user.get("password", "")):
        logger.log_auth_event("password_change", False, user_email=user.get("email"),
                              reason="wrong current password")
        raise ValidationError("Current password is incorrect", field="currentPassword")
    _validate_password(new_password, field="newPassword")

    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"password": get_password_hash(new_password)}},
    )
    logger.log_auth_event("password_change", True, user_email=user.get("email"))


# ------------------------------ Settings ------------------------------

def settings_record(doc: Mapping[str, Any]) -> Dict[str, Any]:
    sections = merge_settings(doc, None)
    return {
        "id": str(doc["_id"]),
        "userId": str(doc["userId"]),
        **sections,
        "createdAt": doc.get("createdAt"),
        "updatedAt": doc.get("updatedAt"),
    }


def _load_user(db: Database, user_id: ObjectId) -> Dict[str, Any]:
    user = db[USERS].find_one({"_id": user_id})
    if not user:
        raise ResourceNotFoundError("User", str(user_id))
    return user


def get_user_settings(db: Database, user_id: ObjectId) -> Dict[str, Any]:
    """Return the user's settings, creating them from the user document or defaults"""
    doc = db[SETTINGS].find_one({"userId": user_id})
    if doc:
        return settings_record(doc)

    user = _load_user(db, user_id)
    now = datetime.now(timezone.utc)
    doc = {"userId": user_id, **merge_settings(user.get("settings"), None),
           "createdAt": now, "updatedAt": now}
    try:
        db[SETTINGS].insert_one(doc)
    except DuplicateKeyError:
        # created by a concurrent request
        doc = db[SETTINGS].find_one({"userId": user_id})
    return settings_record(doc)


def update_user_settings(db: Database, user_id: ObjectId,
                         patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Field-level merge of a settings patch; mirrors the result into the user document"""
    current = db[SETTINGS].find_one({"userId": user_id})
    if current is None:
        current = _load_user(db, user_id).get("settings")

    sections = merge_settings(current, patch)
    now = datetime.now(timezone.utc)
    doc = db[SETTINGS].find_one_and_update(
        {"userId": user_id},
        {"$set": {**sections, "updatedAt": now}, "$setOnInsert": {"createdAt": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    db[USERS].update_one({"_id": user_id}, {"$set": {"settings": sections}})
    logger.info(f"Updated settings for user {user_id}")
    return settings_record(doc)
