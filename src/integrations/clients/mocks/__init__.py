"""
Mock integration clients.

These clients return fake (but realistic) responses without calling any external API.
They are used when:
- Daraja credentials are not configured
- We want to test the payment lifecycle end-to-end without network access

Important:
- Mock clients must follow the SAME interface as real HTTP clients.
- Mock clients should return data shaped according to src/integrations/contracts/*

Switching to real:
When Daraja credentials are provided, src/api/main.py selects
clients/real_http/daraja.py instead.
"""
