"""
Contracts (data models).

This folder defines the request/response shapes for the payment gateway integration:
- the Payment record and its status enum
- the gateway client interface
- validation rules and the STK callback envelope decoding

Both mock and real HTTP clients should use these contracts.
"""
