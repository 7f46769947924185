"""auth/ -- Passwords, access tokens and remember-me sessions for the identity core.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from phone/. The external coordinator composes both.
"""
