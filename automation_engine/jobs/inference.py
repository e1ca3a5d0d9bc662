"""
AI analysis handlers.

Each handler forwards one entity to the inference collaborator with a fixed
capability list. Transport failures are retried by the scheduler; a missing
endpoint or a rejected request is not.
"""

from typing import Any, List

import httpx

from automation_engine.collaborators import InferenceClient
from automation_engine.errors import ExecutionError, ValidationError
from automation_engine.jobs.base import BaseHandler, CancelToken, HandlerResult
from automation_engine.models import AutomationType


class InferenceHandler(BaseHandler):
    """
    Base for handlers that call InferenceClient.process().

    Subclasses set:
        entity_key: Payload key holding the entity id
        capabilities: Capability names sent to the inference service
    """

    entity_key: str = 'entity_id'
    capabilities: List[str] = []

    def __init__(self, inference: InferenceClient):
        super().__init__()
        self.inference = inference

    def validate_payload(self, payload: Any) -> None:
        self.require_keys(payload, self.entity_key)

    def run(self, payload: Any, cancel_token: CancelToken) -> HandlerResult:
        entity_id = str(payload[self.entity_key])
        capabilities = payload.get('capabilities') or self.capabilities

        cancel_token.raise_if_cancelled()
        try:
            result = self.inference.process(entity_id, list(capabilities))
        except ValidationError as e:
            raise ExecutionError(str(e), recoverable=False, cause=e)
        except httpx.HTTPStatusError as e:
            # 4xx means the request itself is wrong; retrying will not help
            recoverable = e.response.status_code >= 500
            raise ExecutionError(f"Inference request failed: {e}", recoverable=recoverable, cause=e)
        except httpx.HTTPError as e:
            raise ExecutionError(f"Inference service unreachable: {e}", cause=e)

        cancel_token.raise_if_cancelled()
        self.logger.info(f"{self.name} finished for {self.entity_key}={entity_id}")
        return HandlerResult(result_data={
            self.entity_key: entity_id,
            'capabilities': list(capabilities),
            'result': result,
        })


class PricingAnalysisHandler(InferenceHandler):
    automation_type = AutomationType.PRICING_ANALYSIS
    description = "Market price estimate and comparison for a listing"
    entity_key = 'listing_id'
    capabilities = ['pricing', 'market_comparison']


class RecommendationsHandler(InferenceHandler):
    automation_type = AutomationType.RECOMMENDATIONS
    description = "Personalised listing recommendations for a user"
    entity_key = 'user_id'
    capabilities = ['recommendations']


class FraudCheckHandler(InferenceHandler):
    automation_type = AutomationType.FRAUD_CHECK
    description = "Fraud detection and content moderation for a listing"
    entity_key = 'listing_id'
    capabilities = ['fraud_detection', 'content_moderation']
