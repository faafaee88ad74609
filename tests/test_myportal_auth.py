import logging
from datetime import datetime, timezone
from unittest import mock

import pytest

import myportal_auth
from conftest import build_config
from errors import PortalRequestError, TaskCancelled, UnrecoverableError
from execution_scheduler import ExecutionScheduler
from myportal_auth import MyPortalAuthenticator, get_hidden_input

SAML_FORM = '<form><input type="hidden" name="SAMLRequest" value="PHNhbWxwOkF1dGhu"/></form>'
REGISTRATION_TIME_PAGE = (
    "<p>Please register within these times</p><td>04/21/2025 09:30 AM</td>"
    "<p>You have no holds which prevent registration.</p>"
)


def make_response(status_code=200, text="", location=None):
    response = mock.Mock()
    response.status_code = status_code
    response.text = text
    response.headers = {"Location": location} if location else {}
    return response


def make_task(portal):
    task = mock.Mock()
    task.portal = portal
    task.config = build_config()
    task.scheduler = ExecutionScheduler(logger=logging.getLogger("tests.auth"))
    task.logger = logging.getLogger("tests.auth")
    return task


def scripted_portal(routes, registration_html=REGISTRATION_TIME_PAGE):
    portal = mock.Mock()

    def send_request(method, url, **kwargs):
        response = routes.get((method, url))
        if isinstance(response, Exception):
            raise response
        return response or make_response()

    portal.send_request.side_effect = send_request
    portal.fetch_registration_time_html.return_value = registration_html
    return portal


def successful_routes():
    return {
        ('GET', myportal_auth.AUTH_AJAX_URL): make_response(200, "userNotLoggedIn"),
        ('GET', myportal_auth.SAML_LOGIN_URL): make_response(200, SAML_FORM),
        ('POST', myportal_auth.IDP_SSO_URL): make_response(302, location=myportal_auth.LOGIN_PAGE_URL),
        ('POST', myportal_auth.LOGIN_PAGE_URL): make_response(200, SAML_FORM),
    }


def test_get_hidden_input():
    assert get_hidden_input(SAML_FORM) == "PHNhbWxwOkF1dGhu"
    with pytest.raises(PortalRequestError):
        get_hidden_input("<form></form>")


def test_already_authenticated_skips_login():
    portal = scripted_portal({('GET', myportal_auth.AUTH_AJAX_URL): make_response(302)})
    task = make_task(portal)

    MyPortalAuthenticator().authenticate(task)

    assert portal.send_request.call_count == 1
    portal.visit_class_registration.assert_not_called()


def test_successful_login_records_registration_time():
    portal = scripted_portal(successful_routes())
    task = make_task(portal)

    MyPortalAuthenticator().authenticate(task)

    assert task.scheduler.registration_instant == datetime(2025, 4, 21, 16, 30, tzinfo=timezone.utc)
    portal.regenerate_session_id.assert_called_once()


def test_invalid_credentials_are_fatal():
    routes = successful_routes()
    routes[('POST', myportal_auth.LOGIN_PAGE_URL)] = make_response(
        302, location="/idp/profile/SAML2/POST/SSO?execution=e1s2")
    task = make_task(scripted_portal(routes))

    with pytest.raises(UnrecoverableError, match="Invalid credentials"):
        MyPortalAuthenticator().authenticate(task)


def test_holds_are_fatal():
    html = "<p>Please register within these times</p><td>04/21/2025 09:30 AM</td>"
    task = make_task(scripted_portal(successful_routes(), registration_html=html))

    with pytest.raises(UnrecoverableError, match="holds"):
        MyPortalAuthenticator().authenticate(task)


def test_ineligible_term_is_fatal():
    task = make_task(scripted_portal(successful_routes(), registration_html="<p>Nothing here</p>"))

    with pytest.raises(UnrecoverableError, match="not eligible"):
        MyPortalAuthenticator().authenticate(task)


def test_idp_failure_resets_session_without_using_an_attempt():
    routes = successful_routes()
    portal = scripted_portal(routes)
    idp_responses = iter([
        make_response(302, location="/ssomanager/ui/error.jsp"),
        make_response(302, location=myportal_auth.LOGIN_PAGE_URL),
    ])
    original = portal.send_request.side_effect

    def send_request(method, url, **kwargs):
        if (method, url) == ('POST', myportal_auth.IDP_SSO_URL):
            return next(idp_responses)
        return original(method, url, **kwargs)

    portal.send_request.side_effect = send_request
    task = make_task(portal)

    MyPortalAuthenticator().authenticate(task)

    portal.reset_session.assert_called_once()
    assert task.scheduler.has_registration_instant()


def test_repeated_portal_errors_become_fatal():
    routes = successful_routes()
    routes[('GET', myportal_auth.SAML_LOGIN_URL)] = PortalRequestError("Error: HTTP 500", status_code=500)
    portal = scripted_portal(routes)
    task = make_task(portal)

    with pytest.raises(UnrecoverableError, match="after 3 attempts"):
        MyPortalAuthenticator().authenticate(task)
    assert portal.visit_class_registration.call_count == myportal_auth.MAX_ATTEMPTS


def test_cancelled_task_never_signs_in():
    portal = scripted_portal(successful_routes())
    task = make_task(portal)
    task.scheduler.request_stop()

    with pytest.raises(TaskCancelled):
        MyPortalAuthenticator().authenticate(task)
    portal.send_request.assert_not_called()
