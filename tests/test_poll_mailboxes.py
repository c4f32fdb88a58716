import asyncio
import json

import pytest

import poll_mailboxes


@pytest.fixture
def tenant(gateway, email_config):
    tenant = gateway.create_tenant()
    asyncio.run(gateway.services.registry.connect(tenant.id, "email", email_config))
    return tenant


def test_polls_every_active_mailbox(gateway, tenant, capsys):
    gateway.mail.deliver()

    code = poll_mailboxes.main([], services=gateway.services)

    [line] = capsys.readouterr().out.splitlines()
    result = json.loads(line)
    assert code == 0
    assert result["tenant_id"] == str(tenant.id)
    assert result["replied"] == 1
    assert len(gateway.smtp.sent) == 1


def test_failed_tenant_sets_exit_code(gateway, tenant, capsys):
    gateway.mail.fail_open = True

    code = poll_mailboxes.main(["--tenant-id", str(tenant.id)], services=gateway.services)

    result = json.loads(capsys.readouterr().out)
    assert code == 1
    assert result["error"].startswith("ChannelConnectionError")


def test_invalid_tenant_id_is_rejected(gateway):
    with pytest.raises(SystemExit) as excinfo:
        poll_mailboxes.main(["--tenant-id", "nope"], services=gateway.services)

    assert excinfo.value.code == 2
