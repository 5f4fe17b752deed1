"""Business services for invoicing, settlement, refunds and notifications."""
