"""Authorization decisions for documents, audit logs and profiles.

Every check takes the requester explicitly and reads only the objects it is
given, so the functions can be called without an app or database. Ownership
always wins: a grant can add capability to a grantee but never takes any
away from the owner.
"""
from errors import Forbidden


def grant_for(doc, user_id):
    """Return the share on ``doc`` held by ``user_id``, if any."""
    for share in doc.shares:
        if share.grantee_id == user_id:
            return share
    return None


def is_owner(doc, user_id):
    return user_id is not None and doc.owner_id == user_id


def can_read(doc, user_id):
    return is_owner(doc, user_id) or grant_for(doc, user_id) is not None


def can_download(doc, user_id):
    if is_owner(doc, user_id):
        return True
    share = grant_for(doc, user_id)
    return share is not None and "download" in (share.permissions or [])


def can_mutate(doc, user_id):
    return is_owner(doc, user_id)


def can_delete(doc, user_id):
    return is_owner(doc, user_id)


def can_share(doc, user_id):
    return is_owner(doc, user_id)


def can_view_log(target_user_id, requester):
    return requester.user_id == target_user_id or requester.role == "admin"


def can_manage_user(target_user_id, requester):
    return requester.user_id == target_user_id or requester.role == "admin"


def require(allowed, message):
    if not allowed:
        raise Forbidden(message)
