"""audit/ -- Append-only audit trail for Enisi.

Layer rule: audit/ imports only core/, stdlib and third-party libraries.
auth/ never imports audit/; the api/ layer records events after calling
into auth/.
"""
