"""chat/ -- Conversations, messages, and the outbound chat-completion call.

Layer rule: chat/ does not import from api/ or auth/. Ownership is expressed
as a plain user_id argument; the identity itself comes from the access guard
in the API layer.
"""
