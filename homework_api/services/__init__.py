from homework_api.services.aggregator import assemble
from homework_api.services.analysis_pipeline import analyze_homework
from homework_api.services.attestation import verify_attestation_token
from homework_api.services.document_router import classify
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy, invoke_model
from homework_api.services.output_repair import repair_model_output

__all__ = [
    "assemble",
    "analyze_homework",
    "verify_attestation_token",
    "classify",
    "GatewaySettings",
    "RetryPolicy",
    "invoke_model",
    "repair_model_output",
]
