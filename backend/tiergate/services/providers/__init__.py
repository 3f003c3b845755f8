"""
Provider-facing capabilities consumed by the routing core.

- ProviderClient: invoke(prompt, context, tier) -> ProviderResult
- EmbeddingProvider: embed(text) -> vector
- UsageLedger: charge / has_balance (declared only; called by the caller
  that owns billing, never by the core)
"""
