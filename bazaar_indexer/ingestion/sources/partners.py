import json
import os
from typing import List, Tuple

from pydantic import ValidationError

from bazaar_indexer.core.logging_config import get_logger
from bazaar_indexer.schemas.x402 import DiscoverySource, PartnerMetadata, SourceError, SourceRecord

logger = get_logger("source_partners")

METADATA_FILE = "metadata.json"


def to_source_record(partner: PartnerMetadata) -> SourceRecord:
    facilitator = partner.facilitator
    return SourceRecord(
        url=facilitator.base_url,
        source=DiscoverySource.PARTNERS_DATA,
        name=partner.name,
        description=partner.description,
        category=partner.category,
        networks=list(facilitator.networks),
        metadata={
            "slug": partner.slug,
            "logoUrl": partner.logo_url,
            "websiteUrl": partner.website_url,
            "facilitatorInfo": facilitator.model_dump(by_alias=True),
        },
    )


def read_partner(path: str, slug: str) -> PartnerMetadata:
    with open(path, mode="r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("metadata must be a JSON object")
    return PartnerMetadata.model_validate({**data, "slug": slug})


def load_partners(partners_path: str) -> Tuple[List[SourceRecord], List[SourceError]]:
    """
    Reads ``<partners_path>/<slug>/metadata.json`` for every partner directory.
    Only partners that run a facilitator become endpoint records.
    Returns (records, errors).
    """
    records: List[SourceRecord] = []
    errors: List[SourceError] = []
    loaded = 0

    try:
        entries = sorted(os.scandir(partners_path), key=lambda e: e.name)
    except OSError as e:
        logger.error("partners_dir_error", path=partners_path, error=str(e))
        return [], [SourceError(source=partners_path, error=str(e))]

    for entry in entries:
        if not entry.is_dir():
            continue
        metadata_path = os.path.join(entry.path, METADATA_FILE)
        try:
            partner = read_partner(metadata_path, entry.name)
        except FileNotFoundError:
            continue
        except ValidationError as e:
            logger.warning("partner_invalid", path=metadata_path, error=str(e))
            errors.append(SourceError(source=metadata_path, error=f"Schema validation failed: {e}"))
            continue
        except (OSError, ValueError) as e:
            logger.warning("partner_read_error", path=metadata_path, error=str(e))
            errors.append(SourceError(source=metadata_path, error=str(e)))
            continue

        loaded += 1
        if partner.facilitator is not None and partner.facilitator.base_url:
            records.append(to_source_record(partner))

    logger.info("partners_loaded", path=partners_path, partners=loaded, facilitators=len(records))
    return records, errors
