"""
LLM Orchestration Layer — Adaptive routing, caching and parsing.

Turns a text segment into a validated node/edge graph by calling an
external completion service with complexity-based tier routing,
throttling, bounded retries and fallback.

Modules:
- llm_config: Model tiers, provider profiles, tier routing
- models: Request/response/diagram dataclasses
- complexity: ComplexityDetector — picks a tier from the text itself
- cache: SemanticCache — exact + similarity cache persisted to JSON
- rate_limiter: RateLimiter — minimum spacing between outbound calls
- providers: Gemini (httpx) and Anthropic completion providers
- prompts: Diagram extraction prompt templates
- parser: ResponseParser — tolerant JSON extraction and graph validation
- executor: RequestExecutor — cache → route → retry → fallback → parse
"""
