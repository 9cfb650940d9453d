from __future__ import annotations

from sqlalchemy import func, select

from backend.app.models import LeakActionState, User
from backend.app.services import leak_action_service


def test_action_state_upserts_per_user(db_session, account, viewer_headers):
    viewer = db_session.execute(select(User).where(User.email == "viewer@acme.test")).scalar_one()

    leak_action_service.set_action_state(
        db_session,
        account_id=account.id,
        user_id=viewer.id,
        action_key="churn_spike:call_at_risk",
        leak_type="churn_spike",
        is_done=True,
    )
    leak_action_service.set_action_state(
        db_session,
        account_id=account.id,
        user_id=viewer.id,
        action_key="churn_spike:call_at_risk",
        leak_type="churn_spike",
        is_done=False,
    )

    assert db_session.execute(select(func.count()).select_from(LeakActionState)).scalar_one() == 1
    assert leak_action_service.list_action_state(db_session, account.id, viewer.id) == {
        "churn_spike:call_at_risk": False
    }


def test_action_routes_toggle_checklist(api_client, account, viewer_headers, member_headers):
    url = f"/api/leaks/{account.id}/actions"
    assert api_client.get(url, headers=viewer_headers).json() == {"account_id": account.id, "done": {}}

    done = api_client.post(
        url,
        json={"action_key": "failed_payments:enable_retries", "leak_type": "failed_payments", "is_done": True},
        headers=viewer_headers,
    )
    assert done.status_code == 200
    assert done.json()["done"] == {"failed_payments:enable_retries": True}

    undone = api_client.post(
        url,
        json={"action_key": "failed_payments:enable_retries", "leak_type": "failed_payments", "is_done": False},
        headers=viewer_headers,
    )
    assert undone.json()["done"] == {"failed_payments:enable_retries": False}

    # another member keeps an independent checklist
    assert api_client.get(url, headers=member_headers).json()["done"] == {}


def test_action_routes_validate_input_and_membership(api_client, account, viewer_headers):
    url = f"/api/leaks/{account.id}/actions"

    unknown = api_client.post(
        url,
        json={"action_key": "x", "leak_type": "not_a_leak", "is_done": True},
        headers=viewer_headers,
    )
    assert unknown.status_code == 400

    empty_key = api_client.post(
        url,
        json={"action_key": "", "leak_type": "churn_spike", "is_done": True},
        headers=viewer_headers,
    )
    assert empty_key.status_code == 422

    stranger = api_client.get(url, headers={"X-User-Email": "stranger@else.test"})
    assert stranger.status_code == 403
