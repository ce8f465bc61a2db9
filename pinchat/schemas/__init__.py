"""
pinchat.schemas
~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from pinchat.schemas.api_response import ApiResponse, StatsData
from pinchat.schemas.events import ClientEvent, EventFrame, ServerEvent

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
