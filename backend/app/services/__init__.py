"""
Services layer for the Athena gateway.

MODULES:
- ai/: provider gateway (vault, configuration resolution, normalization,
  structured output, provider adapters, dispatch)

STANDALONE SERVICES:
- registration_service: API registrations and external key authentication
- metrics_service: per-call metrics recording and aggregation

ARCHITECTURE:
1. External call: registration_service.authenticate → registration
2. Dispatch: ai.AIGateway → AIConfigService.resolve → provider adapter
3. Accounting: metrics_service.MetricsService.record (always)
"""
