import re
from typing import Optional

# 4-digit year followed by the department letters, e.g. 2025CS001 -> CS
DEPARTMENT_PATTERN = re.compile(r"\d{4}([A-Z]+)\d+")

UNKNOWN_DEPARTMENT = "Unknown"


def extract_department(barcode_id: Optional[str]) -> str:
    if not barcode_id:
        return UNKNOWN_DEPARTMENT
    match = DEPARTMENT_PATTERN.search(barcode_id)
    return match.group(1) if match else UNKNOWN_DEPARTMENT
