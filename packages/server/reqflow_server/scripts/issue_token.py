"""
Mint a credential for local testing.

    python -m reqflow_server.scripts.issue_token \
        --user 6f1c... --org 2a9e... --org-role admin \
        --role 0b7d...=approver --role 51aa...=reviewer
"""

import argparse
import sys
import uuid
from datetime import timedelta

from reqflow_server.core.auth import issue_credential
from reqflow_shared.schemas.common import OrgRole, WorkflowRole


def _project_role(value: str) -> tuple[uuid.UUID, WorkflowRole]:
    try:
        project_id, role = value.split("=", 1)
        return uuid.UUID(project_id), WorkflowRole(role)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected PROJECT_ID=ROLE with ROLE one of {[r.value for r in WorkflowRole]}, got {value!r}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a signed reqflow credential")
    parser.add_argument("--user", type=uuid.UUID, default=None, help="User id (random if omitted)")
    parser.add_argument("--org", type=uuid.UUID, required=True, help="Organization id")
    parser.add_argument(
        "--org-role",
        choices=[r.value for r in OrgRole],
        default=OrgRole.MEMBER.value,
    )
    parser.add_argument(
        "--role",
        action="append",
        type=_project_role,
        default=[],
        metavar="PROJECT_ID=ROLE",
        help="Workflow role on a project; repeatable",
    )
    parser.add_argument("--platform-admin", action="store_true")
    parser.add_argument("--minutes", type=int, default=None, help="Lifetime (defaults to REQFLOW_JWT_EXPIRE_MINUTES)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    token, jti = issue_credential(
        args.user or uuid.uuid4(),
        args.org,
        OrgRole(args.org_role),
        dict(args.role),
        is_platform_admin=args.platform_admin,
        expires_delta=timedelta(minutes=args.minutes) if args.minutes else None,
    )
    print(f"jti: {jti}", file=sys.stderr)
    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
