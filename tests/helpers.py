"""
Test doubles: an in-memory IAM fetcher that mirrors IamFetcher's interface, for
tests that need exact listing orders or injected API failures.
"""

from botocore.exceptions import ClientError

from iamadmins.fetch import AuditInterrupted


ADMIN_DOC = {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": "*", "Resource": "*"}]}
IAM_ADMIN_DOC = {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": ["iam:*"], "Resource": ["*"]}]}
S3_DOC = {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": ["s3:*"], "Resource": "*"}]}


def client_error(operation, code="AccessDenied", message="User is not authorized"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def managed(name, path="/"):
    return {"PolicyName": name, "PolicyArn": f"arn:aws:iam::aws:policy{path}{name}"}


class FakeFetcher:
    """
    attached: {(kind, name): [{"PolicyName": ..., "PolicyArn": ...}]}
    inline:   {(kind, name): {policy_name: document}}
    failures: {call tuple: exception}, e.g. {("get_inline_policy_document", "User", "bob", "p"): err}
    """

    def __init__(self, users=(), roles=(), groups=(), memberships=None, attached=None, inline=None, failures=None, stop_event=None):
        self.users = list(users)
        self.roles = list(roles)
        self.groups = list(groups)
        self.memberships = memberships or {}
        self.attached = attached or {}
        self.inline = inline or {}
        self.failures = failures or {}
        self.stop_event = stop_event
        self.calls = []

    def _call(self, *call):
        if self.stop_event is not None and self.stop_event.is_set():
            raise AuditInterrupted()
        self.calls.append(call)
        if call in self.failures:
            raise self.failures[call]

    def list_users(self):
        self._call("list_users")
        return list(self.users)

    def list_roles(self):
        self._call("list_roles")
        return list(self.roles)

    def list_groups(self):
        self._call("list_groups")
        return list(self.groups)

    def list_groups_for_user(self, user_name):
        self._call("list_groups_for_user", user_name)
        return list(self.memberships.get(user_name, []))

    def list_attached_policies(self, kind, name):
        self._call("list_attached_policies", kind, name)
        return list(self.attached.get((kind, name), []))

    def list_inline_policy_names(self, kind, name):
        self._call("list_inline_policy_names", kind, name)
        return list(self.inline.get((kind, name), {}))

    def get_inline_policy_document(self, kind, name, policy_name):
        self._call("get_inline_policy_document", kind, name, policy_name)
        return self.inline[(kind, name)][policy_name]
