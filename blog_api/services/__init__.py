# Services package.
#
# Each module exposes a focused set of async functions that encapsulate
# business logic and database access for a single domain area:
#
#   post_service          - posts, slugs, views, likes, trending
#   comment_service       - threaded comments and the reply tree
#   tag_ledger            - tag normalization and usage counts
#   user_service          - registration, login, profiles, password reset
#   notification_service  - inbox rows and real-time delivery
#   search_service        - cross-entity search and typeahead
#   dashboard_service     - admin summary
#   image_service         - upload validation and resizing
#   ai_service            - chat completions client and prompt parsing
#
# All service functions accept an AsyncSession as their first argument
# so that the router layer controls the transaction boundary via the
# ``get_db`` dependency.
