"""Server-side passkey services: challenges, RP scope, verification, credentials"""
