"""User-facing error strings of the issuance service."""

AGENT_ENDPOINT_NOT_FOUND = "Agent endpoint not found"
AGENT_URL_NOT_FOUND = "Agent url not found"
ORGANIZATION_NOT_FOUND = "Organization not found"
PLATFORM_CONFIG_NOT_FOUND = "Platform config not found"
CREDENTIAL_OFFER_NOT_FOUND = "Credential offer not found"
INVITATION_NOT_FOUND = "Invitation not found"
EMAIL_SEND_FAILED = "Unable to send email to the user"
RECIPIENT_TIMED_OUT = "Timed out while sending credential offer"
