"""Shared constants for selfupgrade."""

PRODUCT_NAME = "selfupgrade"
UPGRADER_EXECUTABLE_NAME = "selfupgrade-upgrader"
UPGRADE_CONFIRM_COMMAND = "`selfupgrade --confirm`"

HOME_ENV_VAR = "SELFUPGRADE_HOME"

UPGRADE_FEED_URL = "upgrade.feedurl"
UPGRADE_FEED_PACKAGE_NAME = "upgrade.feedpackagename"
ORG_INFO_SERVER_URL = "upgrade.orgInfoServerUrl"
ORG_NAME = "upgrade.orgName"
UPGRADE_RING = "upgrade.ring"
CREDENTIAL_URL = "upgrade.credentialUrl"

UPGRADE_CONFIG_KEYS = (
    UPGRADE_FEED_URL,
    UPGRADE_FEED_PACKAGE_NAME,
    ORG_INFO_SERVER_URL,
    ORG_NAME,
    UPGRADE_RING,
    CREDENTIAL_URL,
)

INSTALL_MANIFEST_PATH = "content/install-manifest.json"

DIR_MODE = 0o755
EXECUTABLE_MODE = 0o755
