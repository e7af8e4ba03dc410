import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Iterable, Optional, Set

from ..config.config import settings
from ..db.redis_client import Query, RedisDocumentStore
from ..db.store_errors import StoreError
from ..models.db_models import DEPARTMENT_CODES, Department, Role, StudentIdentity
from ..models.results import BarcodeValidation, QRValidation
from .errors import InvalidInputError, SequenceExhaustedError, ServiceError

logger = logging.getLogger(__name__)

DEPARTMENT_NAMES = {
    "CS": "Computer Science",
    "IT": "Information Technology",
    "ENG": "Engineering",
    "BUS": "Business",
    "EDU": "Education",
    "MED": "Medicine",
    "LAW": "Law",
    "ART": "Arts",
    "SCI": "Science",
    "GEN": "General",
}

MAX_SEQUENCE = 999
QR_FORMAT_VERSION = "1.0"
_REGISTRATION_ATTEMPTS = 5


def generate_checksum(data: str) -> str:
    """
    Polynomial rolling hash (h = h * 31 + c) over UTF-16 code units, wrapped
    to a signed 32-bit integer, rendered in base 36. Tamper-evident only.
    """
    value = 0
    encoded = data.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def _to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, remainder = divmod(number, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_department(department: Optional[str]) -> str:
    code = (department or "").strip().upper()
    return code if code in DEPARTMENT_CODES else Department.GEN.value


def validate_barcode(barcode) -> BarcodeValidation:
    """Structural check of a barcode. Never raises; failures come back as a result."""
    if not barcode or not isinstance(barcode, str):
        return BarcodeValidation(is_valid=False, error="Barcode is required")
    if len(barcode) < 9:
        return BarcodeValidation(is_valid=False, error="Barcode too short")

    year = barcode[:4]
    department = barcode[4:-3]
    sequence = barcode[-3:]

    if not (year.isascii() and year.isdigit()):
        return BarcodeValidation(is_valid=False, error="Invalid year format")
    if department not in DEPARTMENT_NAMES:
        return BarcodeValidation(is_valid=False, error="Invalid department code")
    if not (sequence.isascii() and sequence.isdigit()):
        return BarcodeValidation(is_valid=False, error="Invalid sequential number format")

    return BarcodeValidation(
        is_valid=True,
        barcode=barcode,
        year=int(year),
        department=department,
        department_name=DEPARTMENT_NAMES[department],
        sequence=int(sequence),
    )


def generate_secure_qr_data(barcode: str, student_id: str, timestamp_ms: Optional[int] = None) -> str:
    timestamp_ms = _now_ms() if timestamp_ms is None else timestamp_ms
    return json.dumps({
        "barcode": barcode,
        "studentId": student_id,
        "timestamp": timestamp_ms,
        "checksum": generate_checksum(f"{barcode}{student_id}{timestamp_ms}"),
        "version": QR_FORMAT_VERSION,
    })


def validate_secure_qr_data(qr_data: str, now_ms: Optional[int] = None) -> QRValidation:
    try:
        data = json.loads(qr_data)
        if not isinstance(data, dict):
            return QRValidation(is_valid=False, error="Invalid QR code data")

        if not all(data.get(key) for key in ("barcode", "studentId", "timestamp", "checksum")):
            return QRValidation(is_valid=False, error="Invalid QR code format")

        expected = generate_checksum(f"{data['barcode']}{data['studentId']}{data['timestamp']}")
        if data["checksum"] != expected:
            return QRValidation(is_valid=False, error="QR code integrity check failed")

        now_ms = _now_ms() if now_ms is None else now_ms
        max_age_ms = settings.QR_VALIDITY_HOURS * 60 * 60 * 1000
        if now_ms - int(data["timestamp"]) > max_age_ms:
            return QRValidation(is_valid=False, error="QR code has expired")

        return QRValidation(
            is_valid=True,
            barcode=data["barcode"],
            student_id=data["studentId"],
            timestamp=int(data["timestamp"]),
            version=data.get("version"),
        )
    except (ValueError, TypeError):
        return QRValidation(is_valid=False, error="Invalid QR code data")


class BarcodeService:
    """
    Generates and registers student barcodes (YEAR + DEPARTMENT + 3-digit sequence).
    """
    def __init__(self, store: RedisDocumentStore):
        self.store = store

    async def next_sequence_number(self, year: str, department_code: str, skip: Iterable[int] = ()) -> int:
        """
        Smallest unused sequence number for the prefix, so freed numbers get reused.
        The lexicographic range query only works because the sequence is zero-padded.
        """
        prefix = f"{year}{department_code}"
        query = (
            Query("users")
            .where("barcodeId", ">=", f"{prefix}000")
            .where("barcodeId", "<=", f"{prefix}999")
        )
        try:
            users = await self.store.get(query)
        except StoreError as e:
            # Known gap: the random fallback is not checked against existing barcodes.
            fallback = random.randint(100, MAX_SEQUENCE)
            logger.warning(f"Sequence lookup for '{prefix}' failed ({e}); using random fallback {fallback}.")
            return fallback

        taken = list(skip)
        for user in users:
            barcode_id = user.get("barcodeId")
            if not isinstance(barcode_id, str) or not barcode_id.startswith(prefix):
                continue
            suffix = barcode_id[len(prefix):]
            if suffix.isdigit():
                taken.append(int(suffix))

        next_number = 1
        for number in sorted(taken):
            if number == next_number:
                next_number += 1
            elif number > next_number:
                break

        if next_number > MAX_SEQUENCE:
            raise SequenceExhaustedError(f"All sequence numbers for '{prefix}' are in use.")
        return next_number

    async def generate_unique_barcode(self, department: str = "GEN", year: Optional[int] = None, skip: Iterable[int] = ()) -> str:
        department_code = normalize_department(department)
        year = year if year is not None else datetime.now().year
        sequence = await self.next_sequence_number(str(year), department_code, skip)
        barcode = f"{year}{department_code}{sequence:03d}"
        logger.info(f"Generated barcode {barcode}")
        return barcode

    async def barcode_exists(self, barcode: str) -> bool:
        try:
            users = await self.store.get(Query("users").where("barcodeId", "==", barcode).limit(1))
        except StoreError as e:
            logger.error(f"Could not check whether barcode {barcode} exists: {e}")
            return False
        return bool(users)

    async def register_student(
        self,
        student_id: str,
        email: Optional[str],
        department: str = "GEN",
        year: Optional[int] = None,
        role: str = Role.STUDENT.value,
    ) -> StudentIdentity:
        """
        Generates a barcode and persists the identity under users/{student_id}.
        Each candidate barcode is claimed briefly so two concurrent registrations
        cannot both persist the same one.
        """
        if not student_id or not student_id.strip():
            raise InvalidInputError("A student id is required.")
        if role not in {r.value for r in Role}:
            raise InvalidInputError(f"Invalid role: {role}")

        department_code = normalize_department(department)
        year = year if year is not None else datetime.now().year

        held_by_others: Set[int] = set()
        for attempt in range(1, _REGISTRATION_ATTEMPTS + 1):
            barcode = await self.generate_unique_barcode(department_code, year, held_by_others)
            try:
                claimed = await self.store.try_claim(f"barcode:{barcode}", settings.BARCODE_RESERVATION_SECONDS)
            except StoreError as e:
                raise ServiceError(f"Failed to reserve barcode: {e}") from e
            if not claimed:
                logger.info(f"Barcode {barcode} is being registered by someone else (attempt {attempt}), retrying.")
                held_by_others.add(int(barcode[-3:]))
                continue

            identity = StudentIdentity(
                id=student_id,
                barcode_id=barcode,
                email=email,
                department=department_code,
                academic_year=year,
                role=role,
                created_at=datetime.now(timezone.utc),
            )
            try:
                await self.store.set("users", student_id, identity.to_document())
            except StoreError as e:
                await self.store.release_claim(f"barcode:{barcode}")
                raise ServiceError(f"Failed to register student: {e}") from e
            logger.info(f"Student {student_id} registered with barcode {barcode}")
            return identity

        raise ServiceError("Could not reserve a unique barcode, please try again.")
