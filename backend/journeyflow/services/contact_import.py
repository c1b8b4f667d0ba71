import logging
from io import StringIO
from typing import Dict, List

import pandas as pd
from pydantic import BaseModel, Field

from journeyflow.errors import JourneyflowError, ValidationError
from journeyflow.services.journey_executor import JourneyExecutor

logger = logging.getLogger(__name__)


class ImportSummary(BaseModel):
    rows: int = 0
    enrolled: int = 0
    rejected: int = 0
    errors: List[str] = Field(default_factory=list)


def parse_contact_file(content: str) -> List[Dict[str, str]]:
    """Read a CSV of customers. Requires a ``customer_id`` column; other columns are ignored."""
    if not content or not content.strip():
        return []
    try:
        df = pd.read_csv(StringIO(content), dtype=str)
    except (ValueError, pd.errors.ParserError) as e:
        raise ValidationError(f"Invalid CSV format: {e}") from e
    df.columns = [str(h).strip().lower().replace(" ", "_") for h in df.columns]
    if "customerid" in df.columns and "customer_id" not in df.columns:
        df = df.rename(columns={"customerid": "customer_id"})
    if "customer_id" not in df.columns:
        raise ValidationError("CSV must contain 'customer_id' column.")
    df = df.dropna(subset=["customer_id"])
    df["customer_id"] = df["customer_id"].str.strip()
    df = df[df["customer_id"] != ""].drop_duplicates(subset=["customer_id"])
    return df[["customer_id"]].to_dict("records")


async def import_contacts(executor: JourneyExecutor, journey_id: str, content: str) -> ImportSummary:
    rows = parse_contact_file(content)
    summary = ImportSummary(rows=len(rows))
    logger.info(f"[IMPORT] Importing {len(rows)} contact(s) into journey {journey_id}")
    for row in rows:
        customer_id = row["customer_id"]
        try:
            enrollment = await executor.enroll_customer(journey_id, customer_id)
        except JourneyflowError as e:
            summary.rejected += 1
            summary.errors.append(f"{customer_id}: {e.message}")
            logger.error(f"[IMPORT] Failed to enroll customer {customer_id}: {e.message}")
            continue
        if enrollment is None:
            summary.rejected += 1
        else:
            summary.enrolled += 1
    logger.info(f"[IMPORT] Journey {journey_id}: {summary.enrolled} enrolled, {summary.rejected} rejected")
    return summary
