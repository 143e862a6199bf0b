"""
Recommendation and interaction engine.

Modules:
- models:          interactions, products, profiles, candidates, feed pages
- scorer:          engagement quality of one interaction
- interaction_log: append-only, retention-bounded interaction store
- catalog:         product/category reads and product lifecycle events
- profile:         decayed affinities and budgeted profile rebuilds
- generators:      one candidate generator per strategy
- blender:         weighted, diversified feeds under time budgets
- cache:           feed-page cache with product/user invalidation
- ingress:         validated interaction, dismiss and feedback writes
- service:         query pipeline, preferences, stats, admin operations
- engine:          wires everything together from settings
- cli:             recs-engine maintenance commands
"""
