"""
Ingest API Endpoints.

POST /api/v1/ingest/events        — append an event and re-score its level
POST /api/v1/ingest/measurements  — append a measurement and re-score its level

Malformed input, unknown locations and timestamps outside the accepted
range are rejected with 422 before anything is stored. Re-sending an input
with the same id and payload returns ``duplicate=true`` and changes nothing.
"""

from fastapi import APIRouter, Depends

from levelrisk.api.deps import get_services
from levelrisk.schemas.api import IngestResponse
from levelrisk.schemas.inputs import Event, Measurement
from levelrisk.services.bootstrap import Services
from levelrisk.services.risk_service import IngestResult

router = APIRouter(prefix="/api/v1/ingest", tags=["ingest"])


def _response(result: IngestResult) -> IngestResponse:
    return IngestResponse(
        input_id=result.item.id,
        duplicate=result.duplicate,
        out_of_order=result.out_of_order,
        recomputed=result.recomputed,
        state=result.state,
        alerts=result.alerts,
    )


@router.post("/events", response_model=IngestResponse)
async def ingest_event(event: Event, services: Services = Depends(get_services)):
    return _response(await services.pipeline.ingest_event(event))


@router.post("/measurements", response_model=IngestResponse)
async def ingest_measurement(measurement: Measurement, services: Services = Depends(get_services)):
    return _response(await services.pipeline.ingest_measurement(measurement))
