"""auth/ -- Authentication and identity package for OpsDesk.

Four credential schemes (local, federated password, device code, OIDC) all
end in one Principal, built by auth.identity.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
