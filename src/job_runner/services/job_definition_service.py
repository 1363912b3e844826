import json
import logging
from typing import List

from pydantic import ValidationError

from job_runner.exceptions.exceptions import JobDefinitionError, StagingError
from job_runner.schema import JobDefinition, JobDefinitionList
from job_runner.services.staging_service import StagingService


logger = logging.getLogger(__name__)


def parse_job_definitions(text: str) -> List[JobDefinition]:
    """
    A JSON document with the job definitions of one run, either
    ``{"jobs": [...]}`` or a bare list of definitions.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise JobDefinitionError(f"Job definitions are not valid JSON: {e}") from e

    if isinstance(document, list):
        document = {"jobs": document}
    try:
        return JobDefinitionList.model_validate(document).jobs
    except ValidationError as e:
        raise JobDefinitionError(f"Invalid job definitions: {e}") from e


def load_job_definitions(uri: str, staging: StagingService) -> List[JobDefinition]:
    try:
        text = staging.read_text(uri)
    except StagingError as e:
        raise JobDefinitionError(f"Could not read job definitions from {uri}: {e}") from e

    definitions = parse_job_definitions(text)
    logger.info(f"Loaded {len(definitions)} job definitions from {uri}")
    return definitions
