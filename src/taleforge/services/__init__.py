"""Business logic behind the TaleForge API.

Services:
- segments: story segment generation and story finishing
- images: segment illustration
- narration: full-story narration
- story_context: story bible extraction for prompt consistency
- realtime: per-story event bus and polling fallback
- stories: story library queries and edits
- tiers: subscription tiers, usage limits and founders
- billing: Stripe checkout, portal and webhook sync
- provider_errors: AI provider failure classification
"""
