"""
Spreadsheet Processing Module

Handles spreadsheet parsing, validation and row normalization for the Certificate Batch Service.
"""

import io
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd
from fastapi import HTTPException

from .errors import RowValidationError
from .models import GenerationKind, RowRecord
from .utils import is_valid_email, is_valid_phone


SUPPORTED_EXTENSIONS = (".csv", ".xlsx")


@dataclass
class SheetParseResult:
    """Validated rows plus the rows that were filtered out"""
    rows: List[RowRecord] = field(default_factory=list)
    rejected: List[RowValidationError] = field(default_factory=list)


def read_sheet(contents: bytes, filename: str) -> pd.DataFrame:
    """
    Read the first sheet of an uploaded spreadsheet into a DataFrame of strings

    Args:
        contents: Raw uploaded bytes
        filename: Original file name, used to pick the reader

    Returns:
        DataFrame with every cell as a string (missing cells become "")

    Raises:
        HTTPException: If the file type is unsupported or cannot be parsed
    """
    lowered = (filename or "").lower()
    if not lowered.endswith(SUPPORTED_EXTENSIONS):
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type. Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
        )

    try:
        if lowered.endswith(".csv"):
            df = pd.read_csv(io.BytesIO(contents), dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(io.BytesIO(contents), sheet_name=0, dtype=str, engine="openpyxl")
    except pd.errors.EmptyDataError:
        raise HTTPException(status_code=400, detail="Spreadsheet is empty or invalid")
    except (pd.errors.ParserError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Failed to parse spreadsheet: {str(e)}")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File encoding not supported. Please use UTF-8 encoded CSV")

    return df.fillna("")


def validate_sheet_not_empty(df: pd.DataFrame) -> None:
    """
    Validate that the sheet has at least one data row

    Raises:
        HTTPException: If the sheet is empty
    """
    if df.empty:
        raise HTTPException(status_code=400, detail="Spreadsheet is empty")


def validate_sheet_size(df: pd.DataFrame, max_rows: int) -> None:
    """
    Validate sheet size against maximum allowed rows

    Raises:
        HTTPException: If the sheet exceeds the size limit
    """
    if len(df) > max_rows:
        raise HTTPException(
            status_code=400,
            detail=f"Spreadsheet too large. Maximum allowed rows: {max_rows}, received: {len(df)}"
        )


def find_column(df: pd.DataFrame, name: str) -> Optional[str]:
    """Find a column by case-insensitive header match"""
    for column in df.columns:
        if str(column).strip().lower() == name:
            return column
    return None


def validate_sheet_columns(df: pd.DataFrame, kind: GenerationKind) -> None:
    """
    Validate that the columns needed for this generation kind are present

    Certificate sheets fall back to positional columns, so only credential
    sheets have hard header requirements.

    Raises:
        HTTPException: If required columns are missing
    """
    if kind is GenerationKind.CREDENTIAL:
        required_columns = ["name", "email", "phone"]
        missing_columns = [col for col in required_columns if find_column(df, col) is None]
        if missing_columns:
            raise HTTPException(
                status_code=400,
                detail=f"Missing required columns: {', '.join(missing_columns)}. Required: {', '.join(required_columns)}"
            )


def _cell(row: pd.Series, column: Optional[str]) -> str:
    if column is None:
        return ""
    return str(row[column]).strip()


def _normalize_phone(raw: str) -> str:
    # Spreadsheet tools often render numeric cells as "9876543210.0"
    if raw.endswith(".0"):
        raw = raw[:-2]
    return "".join(ch for ch in raw if ch.isdigit())


def extract_certificate_rows(df: pd.DataFrame) -> SheetParseResult:
    """
    Normalize certificate rows: name required, email optional but well-formed

    When the sheet has no "name" header the first column is used as the name
    and the second column (if any) as the email.

    Args:
        df: Sheet contents as strings

    Returns:
        SheetParseResult with valid rows and rejected rows
    """
    result = SheetParseResult()
    name_column = find_column(df, "name")
    email_column = find_column(df, "email")

    if name_column is None and len(df.columns) > 0:
        name_column = df.columns[0]
        if email_column is None and len(df.columns) > 1:
            email_column = df.columns[1]

    for index, row in df.iterrows():
        name = _cell(row, name_column)
        email = _cell(row, email_column)
        record = {"name": name, "email": email}

        if not name:
            result.rejected.append(RowValidationError(int(index), "name is required", record))
            continue
        if email and not is_valid_email(email):
            result.rejected.append(RowValidationError(int(index), "email format is invalid", record))
            continue

        result.rows.append(RowRecord(name=name, email=email or None))

    return result


def extract_credential_rows(df: pd.DataFrame) -> SheetParseResult:
    """
    Normalize credential rows: name, email and a 10-digit phone are all required

    Args:
        df: Sheet contents as strings

    Returns:
        SheetParseResult with valid rows and rejected rows
    """
    result = SheetParseResult()
    name_column = find_column(df, "name")
    email_column = find_column(df, "email")
    phone_column = find_column(df, "phone")

    for index, row in df.iterrows():
        name = _cell(row, name_column)
        email = _cell(row, email_column)
        phone = _normalize_phone(_cell(row, phone_column))
        record = {"name": name, "email": email, "phone": phone}

        if not name or not email or not phone:
            result.rejected.append(RowValidationError(int(index), "name, email and phone are required", record))
            continue
        if not is_valid_email(email):
            result.rejected.append(RowValidationError(int(index), "email format is invalid", record))
            continue
        if not is_valid_phone(phone):
            result.rejected.append(RowValidationError(int(index), "phone must be a 10-digit number", record))
            continue

        result.rows.append(RowRecord(name=name, email=email, phone=phone))

    return result


def parse_sheet(
    contents: bytes,
    filename: str,
    kind: GenerationKind = GenerationKind.CERTIFICATE,
    max_rows: int = 5000
) -> SheetParseResult:
    """
    Read, validate and normalize an uploaded spreadsheet

    Args:
        contents: Raw uploaded bytes
        filename: Original file name
        kind: Generation kind the rows will be used for
        max_rows: Maximum allowed rows

    Returns:
        SheetParseResult with typed rows ready for a batch run

    Raises:
        HTTPException: For file-level problems (type, parse, size, columns)
    """
    df = read_sheet(contents, filename)

    validate_sheet_not_empty(df)
    validate_sheet_size(df, max_rows)
    validate_sheet_columns(df, kind)

    if kind is GenerationKind.CREDENTIAL:
        return extract_credential_rows(df)
    return extract_certificate_rows(df)


def get_sheet_info(result: SheetParseResult) -> dict:
    """
    Get information about the parsed sheet

    Args:
        result: Parsed sheet

    Returns:
        Dictionary with sheet metadata
    """
    total = len(result.rows) + len(result.rejected)
    with_email = sum(1 for row in result.rows if row.has_dispatchable_email)

    return {
        "total_rows": total,
        "valid_rows": len(result.rows),
        "rejected_rows": len(result.rejected),
        "rows_with_email": with_email,
        "valid_percentage": round((len(result.rows) / total) * 100, 1) if total > 0 else 0
    }
