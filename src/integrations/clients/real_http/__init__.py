"""
Real HTTP integration clients.

These clients communicate with the M-Pesa Daraja API over HTTP:
- OAuth client-credentials token exchange
- STK push submission and status query

Important:
- Must implement the same interface as the mock client (PaymentGateway)
- Must return data shaped according to src/integrations/contracts/*

Switching:
The selection of mock vs real clients should happen in src/api/main.py only.
"""
