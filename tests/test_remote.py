"""
Check-in Engine - Remote Registry Tests

Tests:
  - rejection text classification (nurse / physician / caregiver / unknown)
  - HTTP status mapping to TRANSIENT / OTHER
  - server date normalisation and care item selection
  - HttpRemoteRegistry request bodies and parsing over httpx.MockTransport
"""

import json
import os
import sys
import unittest

import httpx

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from checkin.config import Settings
from checkin.errors import (
    ConfigError,
    ErrorClass,
    RemoteRejected,
    RoleCapacityExceeded,
    TransientRemoteError,
)
from checkin.remote import (
    ACCEPTED_MARKER,
    HttpRemoteRegistry,
    build_checkin_body,
    classify_rejection,
    http_registry,
    parse_server_date,
    rejection_error,
    select_items,
)
from checkin.types import (
    CategoryRecord,
    ItemRecord,
    PersonRecord,
    RegistrationPayload,
    Role,
    SubmitResult,
)


class TestClassifyRejection(unittest.TestCase):

    def test_nurse_capacity(self):
        self.assertEqual(classify_rejection("该责任护士负责人数已达上限50人"),
                         (ErrorClass.ROLE_CAPACITY_EXCEEDED, Role.NURSE))

    def test_physician_capacity(self):
        self.assertEqual(classify_rejection("责任医师负责人数已达上限"),
                         (ErrorClass.ROLE_CAPACITY_EXCEEDED, Role.PHYSICIAN))

    def test_caregiver_capacity_is_other(self):
        self.assertEqual(classify_rejection("护理员负责人数已达上限"),
                         (ErrorClass.OTHER, Role.CAREGIVER))

    def test_unknown_text_is_transient(self):
        self.assertEqual(classify_rejection("系统繁忙，请稍后再试"), (ErrorClass.TRANSIENT, None))

    def test_empty_is_transient(self):
        self.assertEqual(classify_rejection(""), (ErrorClass.TRANSIENT, None))

    def test_client_error_status_is_other(self):
        self.assertEqual(classify_rejection("bad request", 400), (ErrorClass.OTHER, None))

    def test_throttling_status_is_transient(self):
        for status in (408, 429, 500, 503):
            with self.subTest(status=status):
                self.assertEqual(classify_rejection("x", status)[0], ErrorClass.TRANSIENT)

    def test_capacity_text_wins_over_status(self):
        self.assertEqual(classify_rejection("责任护士负责人数已达", 400)[0],
                         ErrorClass.ROLE_CAPACITY_EXCEEDED)


class TestRejectionError(unittest.TestCase):

    def test_capacity_error_carries_role(self):
        err = rejection_error(SubmitResult(False, "责任医师负责人数已达上限", 200))
        self.assertIsInstance(err, RoleCapacityExceeded)
        self.assertEqual(err.role, Role.PHYSICIAN)

    def test_transient(self):
        self.assertIsInstance(rejection_error(SubmitResult(False, "???", 200)),
                              TransientRemoteError)

    def test_other_keeps_role_in_context(self):
        err = rejection_error(SubmitResult(False, "护理员负责人数已达上限", 200))
        self.assertIsInstance(err, RemoteRejected)
        self.assertEqual(err.context["role"], "caregiver")


class TestHelpers(unittest.TestCase):

    def test_parse_server_date(self):
        self.assertEqual(parse_server_date("2025-09-30 08:15:00"), 20250930)
        self.assertEqual(parse_server_date('"2025-01-02 00:00:00"'), 20250102)

    def test_parse_server_date_invalid(self):
        with self.assertRaises(ValueError):
            parse_server_date("not a date")
        with self.assertRaises(ValueError):
            parse_server_date("")

    def test_select_items_by_index(self):
        items = [ItemRecord(f"I{i}") for i in range(5)]
        picked = select_items(items, [0, 2, 9])
        self.assertEqual([i.item_code for i in picked], ["I0", "I2"])

    def test_select_items_skips_codeless(self):
        items = [ItemRecord("I0"), ItemRecord(""), ItemRecord("I2")]
        self.assertEqual([i.item_code for i in select_items(items, [0, 1, 2])], ["I0", "I2"])


def _payload() -> RegistrationPayload:
    return RegistrationPayload(
        person=PersonRecord(101, "370284195001010001", "张三"),
        service_date=20250930,
        category=CategoryRecord("C-04", "01"),
        items=[ItemRecord("A1"), ItemRecord("A2")],
        nurse_id="N1",
        physician_id="D1",
        caregiver_id="C1",
        care_type="05",
        medical_flag=True,
    )


class TestBuildBody(unittest.TestCase):

    def test_vendor_fields(self):
        body = build_checkin_body(_payload())
        self.assertEqual(body["ckh002"], 101)
        self.assertEqual(body["aae030"], 20250930)
        self.assertEqual(body["ckh500"], "N1")
        self.assertEqual(body["ckh099"], "D1")
        self.assertEqual(body["ckh600"], "C1")
        self.assertEqual(body["ckh281"], "1")
        self.assertEqual(body["ckf181"], "05")
        self.assertEqual(body["kh04AddDTOList"], [{"ckh048": "A1"}, {"ckh048": "A2"}])


class TestHttpRemoteRegistry(unittest.TestCase):

    def setUp(self):
        self.requests = []
        self.routes = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "no route"})
        if callable(route):
            return route(request)
        return route

    def client(self) -> HttpRemoteRegistry:
        return HttpRemoteRegistry(
            "https://registry.example.com/api/",
            cookie="SESSION=abc",
            org_code="H37021106950",
            region_code=370284,
            transport=httpx.MockTransport(self.handler),
        )

    def body(self, index=-1) -> dict:
        return json.loads(self.requests[index].content)

    def test_lookup_person(self):
        self.routes[("POST", "/api/nursing/kh01/selectPlanAlreadyMade")] = httpx.Response(
            200, json={"list": [{"ckh002": 7, "aac002": "3702", "aac003": "张三"}]})
        with self.client() as reg:
            person = reg.lookup_person("张三")
        self.assertEqual(person, PersonRecord(7, "3702", "张三"))
        body = self.body()
        self.assertEqual(body["aac003"], "张三")
        self.assertEqual(body["ckh005"], "H37021106950")
        self.assertEqual(self.requests[-1].headers["cookie"], "SESSION=abc")

    def test_lookup_person_not_found(self):
        self.routes[("POST", "/api/nursing/kh01/selectPlanAlreadyMade")] = httpx.Response(
            200, json={"list": []})
        with self.client() as reg:
            self.assertIsNone(reg.lookup_person("nobody"))

    def test_server_date_plain_text(self):
        self.routes[("GET", "/api/sys/getDatabaseTime/getTime")] = httpx.Response(
            200, text="2025-09-30 08:15:00")
        with self.client() as reg:
            self.assertEqual(reg.get_server_date(), "2025-09-30 08:15:00")

    def test_categories_and_items(self):
        self.routes[("POST", "/api/nursing/kh18/queryKH18")] = httpx.Response(
            200, json=[{"ckh059": "C-04", "ckh003": "01"}])
        self.routes[("POST", "/api/nursing/kh18/queryKH20ClassifyList")] = httpx.Response(
            200, json=[{"kh20DTOA": {"ckh048": "A1"}}, {"kh20DTOA": None}, {"kh20DTOA": {"ckh048": "A3"}}])
        with self.client() as reg:
            cats = reg.list_care_categories("01", "04")
            items = reg.list_care_items("C-04")
        self.assertEqual(cats, [CategoryRecord("C-04", "01")])
        self.assertEqual([i.item_code for i in items], ["A1", "", "A3"])
        self.assertEqual(self.body(0), {"ckh003": "01", "ckh057": "04"})
        self.assertEqual(self.body(1), {"ckh059": "C-04"})

    def test_list_personnel_maps_role_codes(self):
        self.routes[("POST", "/api/sys/kh34/queryKH34List")] = httpx.Response(200, json=[
            {"ckh174": "N1", "ckh122": "12", "aac003": "护士甲"},
            {"ckh174": "D1", "ckh122": "13", "aac003": "医师甲"},
            {"ckh174": "C1", "ckh122": "10", "aac003": "刘芳-护理员"},
            {"ckh174": "X1", "ckh122": "99", "aac003": "其他"},
        ])
        with self.client() as reg:
            records = reg.list_personnel("H37021106950")
        self.assertEqual([r.role for r in records],
                         [Role.NURSE, Role.PHYSICIAN, Role.CAREGIVER, None])
        self.assertEqual(self.body(), {"ckf020": "H37021106950"})

    def test_submit_accepted(self):
        self.routes[("POST", "/api/nursing/kh01/checkIn")] = httpx.Response(
            200, text=f"{ACCEPTED_MARKER}！")
        with self.client() as reg:
            result = reg.submit(_payload())
        self.assertTrue(result.accepted)
        self.assertEqual(self.body()["ckh500"], "N1")

    def test_submit_rejected_text(self):
        self.routes[("POST", "/api/nursing/kh01/checkIn")] = httpx.Response(
            200, text="责任护士负责人数已达上限")
        with self.client() as reg:
            result = reg.submit(_payload())
        self.assertFalse(result.accepted)
        self.assertIn("责任护士", result.message)

    def test_submit_http_error_returns_result(self):
        self.routes[("POST", "/api/nursing/kh01/checkIn")] = httpx.Response(
            500, json={"message": "internal"})
        with self.client() as reg:
            result = reg.submit(_payload())
        self.assertEqual((result.accepted, result.message, result.status_code),
                         (False, "internal", 500))

    def test_submit_connection_error_is_transient(self):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)
        self.routes[("POST", "/api/nursing/kh01/checkIn")] = boom
        with self.client() as reg:
            with self.assertRaises(TransientRemoteError):
                reg.submit(_payload())

    def test_lookup_5xx_is_transient(self):
        self.routes[("POST", "/api/nursing/kh18/queryKH18")] = httpx.Response(503, text="down")
        with self.client() as reg:
            with self.assertRaises(TransientRemoteError):
                reg.list_care_categories("01", "04")

    def test_lookup_4xx_is_rejected(self):
        self.routes[("POST", "/api/nursing/kh18/queryKH18")] = httpx.Response(
            403, json={"message": "forbidden"})
        with self.client() as reg:
            with self.assertRaises(RemoteRejected) as ctx:
                reg.list_care_categories("01", "04")
        self.assertEqual(ctx.exception.context["status_code"], 403)

    def test_timeout_is_transient(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)
        self.routes[("GET", "/api/sys/getDatabaseTime/getTime")] = slow
        with self.client() as reg:
            with self.assertRaises(TransientRemoteError):
                reg.get_server_date()


class TestHttpRegistryFactory(unittest.TestCase):

    def test_built_from_settings(self):
        s = Settings()
        s.api.base_url = "https://registry.example.com/api/"
        s.organization.code = "H37021106950"
        reg = http_registry(s)
        self.addCleanup(reg.close)
        self.assertIsInstance(reg, HttpRemoteRegistry)
        self.assertEqual(reg.base_url, "https://registry.example.com/api")
        self.assertEqual(reg.org_code, "H37021106950")

    def test_base_url_required(self):
        with self.assertRaises(ConfigError) as ctx:
            http_registry(Settings())
        self.assertIn("base_url", str(ctx.exception))

    def test_server_uses_same_factory(self):
        from api import server
        self.assertIs(server.http_registry, http_registry)


if __name__ == "__main__":
    unittest.main()
