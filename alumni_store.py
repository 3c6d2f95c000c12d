"""
Alumni Record Store

Owns the rules for alumni records:

- ``registrationNumber`` is globally unique. A pre-write lookup gives a
  friendly error, but the unique index on the collection is the authority:
  a DuplicateKeyError from MongoDB is reported as DuplicateRecordError too.
- Updates merge nested sections leaf by leaf. A leaf omitted from the
  request keeps its stored value.
- Attachment URLs resolve as: freshly uploaded file, then the URL in the
  request payload, then the stored value (empty string on create).

Nested sections may arrive as dicts (JSON bodies) or as JSON-encoded strings
(multipart forms).
"""

import json
import math
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import settings
from database import ALUMNI
from exceptions import DuplicateRecordError, ResourceNotFoundError, StorageError, ValidationError
from logging_config import logger

REQUIRED_FIELDS = ("name", "program", "passingYear", "registrationNumber")
SCALAR_FIELDS = ("name", "academicUnit", "program", "passingYear", "registrationNumber")

NESTED_SECTIONS: Dict[str, Tuple[str, ...]] = {
    "contactDetails": ("email", "phone", "address"),
    "qualifiedExams": ("examName", "rollNumber", "certificateUrl"),
    "employment": (
        "type",
        "employerName",
        "employerContact",
        "employerEmail",
        "documentUrl",
        "selfEmploymentDetails",
    ),
    "higherEducation": ("institutionName", "programName", "documentUrl"),
}

# multipart file field -> (nested section, URL leaf)
DOCUMENT_FIELDS: Dict[str, Tuple[str, str]] = {
    "qualificationImage": ("qualifiedExams", "certificateUrl"),
    "employmentImage": ("employment", "documentUrl"),
    "higherEducationImage": ("higherEducation", "documentUrl"),
}

PASSING_YEAR_PATTERN = re.compile(r"^\d{4}-\d{2}$")

DUPLICATE_MESSAGE = "Alumni with this registration number already exists"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Mapping[str, Any]) -> Dict[str, Any]:
    """Stored document -> API shape (``_id`` becomes string ``id``)"""
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def parse_nested(field: str, value: Any, strict: bool = False) -> Optional[Dict[str, Any]]:
    """
    Coerce a nested section from the request into a dict.

    Returns None when the section is absent. Malformed JSON (or JSON that is
    not an object) is logged and treated as absent, unless ``strict`` is set,
    in which case ValidationError is raised.
    """
    if not _is_present(value):
        return None
    if isinstance(value, Mapping):
        return dict(value)

    parsed: Any = None
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = None
    if isinstance(parsed, dict):
        return parsed

    if strict:
        raise ValidationError(f"{field} must be a JSON object", field=field)
    logger.warning(f"Ignoring malformed {field} payload", extra={"field": field})
    return None


class AlumniStore:
    """Create, update, delete and query alumni records"""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow,
                 strict_nested_json: Optional[bool] = None,
                 enforce_passing_year_format: Optional[bool] = None):
        self.db = db
        self.clock = clock
        self.strict_nested_json = (
            settings.STRICT_NESTED_JSON if strict_nested_json is None else strict_nested_json
        )
        self.enforce_passing_year_format = (
            settings.ENFORCE_PASSING_YEAR_FORMAT
            if enforce_passing_year_format is None else enforce_passing_year_format
        )

    @property
    def collection(self) -> Collection:
        return self.db[ALUMNI]

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate driver errors into the store's error types"""
        try:
            yield
        except DuplicateKeyError as e:
            logger.info(f"Unique index rejected alumni {operation}")
            raise DuplicateRecordError(DUPLICATE_MESSAGE, field="registrationNumber") from e
        except PyMongoError as e:
            logger.log_error_with_context(e, context=f"alumni.{operation}")
            raise StorageError(f"Could not {operation} alumni record", operation=operation) from e

    # ----------------------------------------------------------------
    # Payload handling
    # ----------------------------------------------------------------

    def normalize_payload(self, payload: Mapping[str, Any]) -> Tuple[Dict[str, str], Dict[str, Dict[str, str]]]:
        """
        Split a request payload into present scalar fields and present nested
        leaves. Absent, null and empty values are dropped; unknown keys are
        ignored.
        """
        scalars = {
            field: _as_text(payload[field]).strip()
            for field in SCALAR_FIELDS
            if _is_present(payload.get(field))
        }
        scalars = {k: v for k, v in scalars.items() if v}

        nested: Dict[str, Dict[str, str]] = {}
        for section, leaves in NESTED_SECTIONS.items():
            parsed = parse_nested(section, payload.get(section), strict=self.strict_nested_json)
            if parsed is None:
                continue
            nested[section] = {
                leaf: _as_text(parsed[leaf]) for leaf in leaves if _is_present(parsed.get(leaf))
            }
        return scalars, nested

    def _validate_passing_year(self, passing_year: str) -> None:
        if self.enforce_passing_year_format and not PASSING_YEAR_PATTERN.match(passing_year):
            raise ValidationError("passingYear must look like YYYY-YY", field="passingYear")

    def validate_new(self, payload: Mapping[str, Any]) -> Tuple[Dict[str, str], Dict[str, Dict[str, str]]]:
        """Check a create payload; callers run this before uploading attachments"""
        scalars, nested = self.normalize_payload(payload)
        missing = [field for field in REQUIRED_FIELDS if field not in scalars]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])
        self._validate_passing_year(scalars["passingYear"])
        return scalars, nested

    def validate_changes(self, payload: Mapping[str, Any]) -> Tuple[Dict[str, str], Dict[str, Dict[str, str]]]:
        scalars, nested = self.normalize_payload(payload)
        if "passingYear" in scalars:
            self._validate_passing_year(scalars["passingYear"])
        return scalars, nested

    @staticmethod
    def merge_section(section: str, incoming: Mapping[str, str], existing: Any,
                      uploads: Mapping[str, str]) -> Dict[str, str]:
        """
        Field-level merge of one nested section.

        Each leaf takes the incoming value if present, else the stored one,
        else "". A just-uploaded file then overrides its URL leaf.
        """
        existing = existing if isinstance(existing, Mapping) else {}
        merged = {}
        for leaf in NESTED_SECTIONS[section]:
            if leaf in incoming:
                merged[leaf] = incoming[leaf]
            elif _is_present(existing.get(leaf)):
                merged[leaf] = _as_text(existing[leaf])
            else:
                merged[leaf] = ""

        for file_field, (target, leaf) in DOCUMENT_FIELDS.items():
            if target == section and uploads.get(file_field):
                merged[leaf] = uploads[file_field]
        return merged

    def _ensure_registration_available(self, registration_number: str,
                                       exclude_id: Optional[ObjectId] = None) -> None:
        query: Dict[str, Any] = {"registrationNumber": registration_number}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if self.collection.find_one(query, {"_id": 1}):
            raise DuplicateRecordError(DUPLICATE_MESSAGE, field="registrationNumber",
                                       value=registration_number)

    # ----------------------------------------------------------------
    # Mutations
    # ----------------------------------------------------------------

    def create_alumni(self, payload: Mapping[str, Any],
                      uploaded_files: Optional[Mapping[str, str]] = None,
                      actor_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a record.

        Args:
            payload: scalar fields plus optional nested sections
            uploaded_files: {file field: URL} of attachments already stored
            actor_id: id of the authenticated caller, kept as createdBy

        Raises:
            ValidationError: a required field is missing
            DuplicateRecordError: registration number already used
            StorageError: database unreachable or rejected the write
        """
        scalars, nested = self.validate_new(payload)

        uploads = uploaded_files or {}
        with self._guard("create"):
            self._ensure_registration_available(scalars["registrationNumber"])

            now = self.clock()
            doc: Dict[str, Any] = {field: scalars.get(field, "") for field in SCALAR_FIELDS}
            for section in NESTED_SECTIONS:
                doc[section] = self.merge_section(section, nested.get(section, {}), {}, uploads)
            doc["createdBy"] = actor_id
            doc["createdAt"] = now
            doc["updatedAt"] = now

            result = self.collection.insert_one(doc)

        doc["_id"] = result.inserted_id
        logger.info(f"Created alumni {result.inserted_id} ({doc['registrationNumber']})")
        return serialize(doc)

    def update_alumni(self, alumni_id: str, payload: Mapping[str, Any],
                      uploaded_files: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """
        Merge a partial payload into an existing record.

        Scalars present in the payload overwrite; nested sections merge leaf
        by leaf; attachment URLs follow upload > payload > stored.
        """
        oid = object_id(alumni_id)
        if oid is None:
            raise ResourceNotFoundError("Alumni", alumni_id)

        scalars, nested = self.validate_changes(payload)

        uploads = uploaded_files or {}
        with self._guard("update"):
            existing = self.collection.find_one({"_id": oid})
            if not existing:
                raise ResourceNotFoundError("Alumni", alumni_id)

            new_registration = scalars.get("registrationNumber")
            if new_registration and new_registration != existing.get("registrationNumber"):
                self._ensure_registration_available(new_registration, exclude_id=oid)

            changes: Dict[str, Any] = {
                field: scalars.get(field, existing.get(field, "")) for field in SCALAR_FIELDS
            }
            for section in NESTED_SECTIONS:
                changes[section] = self.merge_section(
                    section, nested.get(section, {}), existing.get(section), uploads
                )
            changes["updatedAt"] = self.clock()

            result = self.collection.update_one({"_id": oid}, {"$set": changes})
            if result.matched_count == 0:
                raise ResourceNotFoundError("Alumni", alumni_id)

        logger.info(f"Updated alumni {alumni_id}")
        return serialize({**existing, **changes})

    def delete_alumni(self, alumni_id: str) -> None:
        """Unconditional delete; attachments stay in file storage"""
        oid = object_id(alumni_id)
        if oid is None:
            raise ResourceNotFoundError("Alumni", alumni_id)
        with self._guard("delete"):
            result = self.collection.delete_one({"_id": oid})
        if result.deleted_count == 0:
            raise ResourceNotFoundError("Alumni", alumni_id)
        logger.info(f"Deleted alumni {alumni_id}")

    # ----------------------------------------------------------------
    # Queries
    # ----------------------------------------------------------------

    def get_alumni(self, alumni_id: str) -> Dict[str, Any]:
        oid = object_id(alumni_id)
        if oid is None:
            raise ResourceNotFoundError("Alumni", alumni_id)
        with self._guard("read"):
            doc = self.collection.find_one({"_id": oid})
        if not doc:
            raise ResourceNotFoundError("Alumni", alumni_id)
        return serialize(doc)

    def list_alumni(self, academic_unit: Optional[str] = None, passing_year: Optional[str] = None,
                    program: Optional[str] = None, page: int = 1,
                    page_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Offset-paginated listing, newest first. A page size above
        MAX_PAGE_SIZE is rejected rather than shortened.

        The total comes from a separate count and may be stale relative to
        the page under concurrent writes.
        """
        query: Dict[str, Any] = {}
        if academic_unit and academic_unit != "all":
            query["academicUnit"] = academic_unit
        if passing_year and passing_year != "all":
            query["passingYear"] = passing_year
        if program:
            query["program"] = {"$regex": re.escape(program), "$options": "i"}

        page = max(page or 1, 1)
        limit = page_size if page_size and page_size > 0 else settings.DEFAULT_PAGE_SIZE
        if limit > settings.MAX_PAGE_SIZE:
            raise ValidationError(f"limit must not exceed {settings.MAX_PAGE_SIZE}", field="limit")

        with self._guard("list"):
            total = self.collection.count_documents(query)
            docs = list(
                self.collection.find(query)
                .sort("createdAt", DESCENDING)
                .skip(limit * (page - 1))
                .limit(limit)
            )

        return {
            "data": [serialize(doc) for doc in docs],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "totalPages": math.ceil(total / limit),
            },
        }

    def search_alumni(self, query: Optional[str], academic_unit: Optional[str] = None) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on name, registration number and program"""
        text = (query or "").strip()
        if not text:
            raise ValidationError("Search query is required", field="query")

        pattern = {"$regex": re.escape(text), "$options": "i"}
        criteria: Dict[str, Any] = {
            "$or": [
                {"name": pattern},
                {"registrationNumber": pattern},
                {"program": pattern},
            ]
        }
        if academic_unit and academic_unit != "all":
            criteria["academicUnit"] = academic_unit

        with self._guard("search"):
            docs = list(
                self.collection.find(criteria)
                .sort("createdAt", DESCENDING)
                .limit(settings.SEARCH_RESULT_LIMIT)
            )
        return [serialize(doc) for doc in docs]

    def alumni_stats(self) -> Dict[str, Any]:
        with self._guard("aggregate"):
            total = self.collection.count_documents({})
            by_unit = self.collection.aggregate([
                {"$group": {"_id": "$academicUnit", "count": {"$sum": 1}}},
            ])
            by_year = self.collection.aggregate([
                {"$group": {"_id": "$passingYear", "count": {"$sum": 1}}},
                {"$sort": {"_id": 1}},
            ])
            academic_units = {str(row["_id"] or ""): row["count"] for row in by_unit}
            passing_years = {str(row["_id"] or ""): row["count"] for row in by_year}
            employed = self.collection.count_documents({"employment.type": "Employed"})
            higher_education = self.collection.count_documents(
                {"higherEducation.institutionName": {"$exists": True, "$ne": ""}}
            )

        return {
            "totalAlumni": total,
            "byAcademicUnit": academic_units,
            "byPassingYear": passing_years,
            "employmentRate": _percent(employed, total),
            "higherEducationRate": _percent(higher_education, total),
        }


def _percent(part: int, whole: int) -> int:
    # rounds half up
    return int(math.floor(part * 100 / whole + 0.5)) if whole else 0
