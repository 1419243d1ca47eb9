from app import ensure_sandbox_school, ensure_site_admin
from models import School, User


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    data = response.get_json()
    assert data['status'] == 'ok'
    assert data['service'] == 'educafric'
    assert data['database'] == 'ok'


def test_init_db_command(app):
    result = app.test_cli_runner().invoke(args=['init-db'])
    assert 'Database initialized.' in result.output

    admin = User.query.filter_by(username='siteadmin').one()
    assert admin.role == 'SiteAdmin'
    assert admin.check_password('admin-pass')
    assert School.query.filter_by(is_sandbox=True).one().subscription_status == 'premium'


def test_seeding_is_idempotent(app):
    admin = ensure_site_admin(app)
    sandbox = ensure_sandbox_school(app)
    assert ensure_site_admin(app) is None
    assert ensure_sandbox_school(app).id == sandbox.id
    assert User.query.filter_by(role='SiteAdmin').one().id == admin.id


def test_scheduled_job_commands(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['check-fees'])
    assert "Fees checked: {'overdue': 0, 'reminders': 0}" in result.output

    result = runner.invoke(args=['check-subscriptions'])
    assert "Subscriptions checked: {'expired': 0, 'notices': 0}" in result.output

    result = runner.invoke(args=['process-notifications', '--limit', '10'])
    assert "'processed': 0" in result.output
