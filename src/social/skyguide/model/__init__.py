"""
Data Models

Pydantic models for the records the OAuth core keeps between requests.

Key Models:
- oauth.py: OAuthRequest (short-lived authorization state keyed by the
  OAuth ``state`` value) and OAuthSession (per-DID tokens and DPoP key)
- profile.py: Profile summary fetched after a successful login

Both records are plain values: stores copy them in and out, and nothing
outside a store mutates a stored record in place.
"""
