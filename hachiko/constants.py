BRANCH_PREFIX = "hachiko/"
LEGACY_BRANCH_PREFIX = "hachi/"
MIGRATION_LABEL = "hachiko:migration"
TRACKING_TOKEN_PREFIX = "hachiko-track:"
CLEANUP_STEP = "cleanup"
