import unittest
from datetime import date, datetime, time
from decimal import Decimal

from asset_rental.tests.support import (
    ADMIN,
    CHECKER,
    CLIENT,
    LIAISON,
    MANAGER,
    OTHER_CLIENT,
    SUPERVISOR,
    VIEWER,
    Clock,
    add_asset,
    add_rate,
    assign,
    assign_default_staff,
    make_engine,
    make_session_factory,
)
from asset_rental.models.statuses import ConditionRating, OperationStatus, TimesheetStatus, VerifierStatus
from asset_rental.models.timesheet_models import ClientContact, RentalTimesheet
from asset_rental.services.asset_ports import SqlAssetStatusPort, SqlRentalRatePort
from asset_rental.services.errors import NegativeUsageError, NotFound, PermissionDenied, StateConflict, ValidationError
from asset_rental.services.permission_service import Authorizer, PermissionResolver
from asset_rental.services.rental_service import RentalLifecycle
from asset_rental.services.role_service import seed_default_rbac
from asset_rental.services.timesheet_service import (
    TimesheetApprovalChain,
    calculate_overtime,
    calculate_usage,
    is_fully_approved,
    serialize_timesheet,
)


class TimesheetCalculationTests(unittest.TestCase):
    def test_full_approval_needs_both_tracks(self):
        verifier_only = RentalTimesheet(VerifierStatus=VerifierStatus.APPROVED, ClientApprovedAt=None)
        client_only = RentalTimesheet(VerifierStatus=VerifierStatus.PENDING, ClientApprovedAt=datetime(2024, 1, 2, 8, 0))
        both = RentalTimesheet(VerifierStatus=VerifierStatus.APPROVED, ClientApprovedAt=datetime(2024, 1, 2, 8, 0))
        disputed = RentalTimesheet(VerifierStatus=VerifierStatus.DISPUTED, ClientApprovedAt=datetime(2024, 1, 2, 8, 0))

        self.assertFalse(is_fully_approved(verifier_only))
        self.assertFalse(is_fully_approved(client_only))
        self.assertTrue(is_fully_approved(both))
        self.assertFalse(is_fully_approved(disputed))

    def test_overtime_is_hours_beyond_standard(self):
        timesheet = RentalTimesheet(OperatingHours=Decimal("10.5"))
        self.assertEqual(calculate_overtime(timesheet, Decimal("8")), Decimal("2.50"))
        timesheet.OperatingHours = Decimal("6")
        self.assertEqual(calculate_overtime(timesheet, Decimal("8")), Decimal("0.00"))
        self.assertEqual(timesheet.OvertimeHours, Decimal("0.00"))

    def test_usage_is_end_minus_start(self):
        timesheet = RentalTimesheet(HmKmStart=Decimal("1200.5"), HmKmEnd=Decimal("1208"))
        self.assertEqual(calculate_usage(timesheet), Decimal("7.50"))
        self.assertEqual(timesheet.HmKmUsage, Decimal("7.50"))

    def test_negative_usage_raises_arithmetic_error(self):
        timesheet = RentalTimesheet(HmKmStart=Decimal("120"), HmKmEnd=Decimal("100"))
        with self.assertRaises(ArithmeticError):
            calculate_usage(timesheet)
        self.assertIsNone(timesheet.HmKmUsage)
        with self.assertRaises(NegativeUsageError):
            calculate_usage(timesheet)


class TimesheetApprovalChainTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        seed_default_rbac(self.db)
        assign_default_staff(self.db)
        self.clock = Clock(datetime(2024, 1, 1, 8, 0))

        asset = add_asset(self.db, "DT-100")
        add_rate(self.db, asset_id=asset.AssetID)
        authorizer = Authorizer(PermissionResolver(self.db, now=self.clock.now))
        lifecycle = RentalLifecycle(
            self.db,
            authorizer,
            SqlAssetStatusPort(self.db),
            SqlRentalRatePort(self.db),
            today=self.clock.today,
            now=self.clock.now,
        )
        self.rental = lifecycle.create_rental(ADMIN, asset.AssetID, CLIENT)
        lifecycle.approve_rental(MANAGER, self.rental.RentalID, start_date=date(2024, 1, 1), expected_end_date=date(2024, 1, 31))
        lifecycle.dispatch_rental(SUPERVISOR, self.rental.RentalID, condition_rating=ConditionRating.GOOD)
        self.pending_rental = lifecycle.create_rental(ADMIN, add_asset(self.db, "DT-101").AssetID, CLIENT)

        self.clock.current = datetime(2024, 1, 10, 17, 0)
        self.chain = TimesheetApprovalChain(self.db, authorizer, standard_hours=Decimal("8"), now=self.clock.now)
        self.contact = self.chain.create_client_contact(ADMIN, CLIENT, "Site Manager", can_approve_timesheet=True, is_primary=True)
        self.viewer_contact = self.chain.create_client_contact(ADMIN, CLIENT, "Accountant")
        self.foreign_contact = self.chain.create_client_contact(ADMIN, OTHER_CLIENT, "Other PIC", can_approve_timesheet=True)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _record(self, work_date=date(2024, 1, 9), **values):
        values.setdefault("operating_hours", Decimal("10"))
        values.setdefault("standby_hours", Decimal("1"))
        values.setdefault("hm_km_start", Decimal("1500"))
        values.setdefault("hm_km_end", Decimal("1510"))
        return self.chain.create_timesheet(CHECKER, self.rental.RentalID, work_date, **values)

    def _submitted(self, **values):
        timesheet = self._record(**values)
        return self.chain.submit_timesheet(CHECKER, timesheet.TimesheetID)

    def test_create_computes_overtime_and_usage(self):
        timesheet = self._record(start_time=time(7, 0), end_time=time(18, 0), photos=["site.jpg"])
        self.assertEqual(timesheet.Status, TimesheetStatus.DRAFT)
        self.assertEqual(timesheet.VerifierStatus, VerifierStatus.PENDING)
        self.assertEqual(timesheet.OvertimeHours, Decimal("2.00"))
        self.assertEqual(timesheet.HmKmUsage, Decimal("10.00"))
        self.assertEqual(timesheet.CheckerID, CHECKER)
        payload = serialize_timesheet(timesheet)
        self.assertEqual(payload["photos"], ["site.jpg"])
        self.assertFalse(payload["isFullyApproved"])

    def test_create_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            self._record(operating_hours=Decimal("20"), standby_hours=Decimal("5"))
        with self.assertRaises(ValidationError):
            self._record(standby_hours=Decimal("-1"))
        with self.assertRaises(ValidationError):
            self._record(operation_status=OperationStatus.BREAKDOWN, breakdown_hours=Decimal("3"))
        with self.assertRaises(ArithmeticError):
            self._record(hm_km_start=Decimal("1510"), hm_km_end=Decimal("1500"))
        with self.assertRaises(ValidationError):
            self._record(work_date=date(2024, 1, 11))
        self.assertEqual(self.chain.list_timesheets(VIEWER, self.rental.RentalID), [])

    def test_one_record_per_day(self):
        self._record()
        with self.assertRaises(ValidationError):
            self._record()

    def test_rental_must_be_dispatched(self):
        with self.assertRaises(StateConflict):
            self.chain.create_timesheet(CHECKER, self.pending_rental.RentalID, date(2024, 1, 9), operating_hours=Decimal("8"))

    def test_verify_then_client_sign_reaches_approved(self):
        timesheet = self._submitted()
        self.chain.verify_timesheet(SUPERVISOR, timesheet.TimesheetID, approved=True)
        self.assertEqual(timesheet.Status, TimesheetStatus.VERIFIED)
        self.assertFalse(is_fully_approved(timesheet))

        self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "signature-data")
        self.assertEqual(timesheet.Status, TimesheetStatus.APPROVED)
        self.assertTrue(is_fully_approved(timesheet))
        self.assertEqual(timesheet.ClientPicID, self.contact.ContactID)

    def test_client_sign_then_verify_reaches_approved(self):
        timesheet = self._submitted()
        self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "signature-data")
        self.assertEqual(timesheet.Status, TimesheetStatus.SUBMITTED)
        self.assertFalse(is_fully_approved(timesheet))

        self.chain.verify_timesheet(SUPERVISOR, timesheet.TimesheetID, approved=True)
        self.assertEqual(timesheet.Status, TimesheetStatus.APPROVED)
        self.assertTrue(is_fully_approved(timesheet))

    def test_client_cannot_sign_twice(self):
        timesheet = self._submitted()
        self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "first")
        with self.assertRaises(StateConflict):
            self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "second")
        self.assertEqual(self.db.get(RentalTimesheet, timesheet.TimesheetID).ClientSignature, "first")

    def test_contact_must_be_allowed_active_and_from_the_client(self):
        timesheet = self._submitted()
        with self.assertRaises(PermissionDenied):
            self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.viewer_contact.ContactID, "sig")
        with self.assertRaises(PermissionDenied):
            self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.foreign_contact.ContactID, "sig")

        self.chain.set_client_contact_active(ADMIN, self.contact.ContactID, False)
        with self.assertRaises(PermissionDenied):
            self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "sig")

        reloaded = self.db.get(RentalTimesheet, timesheet.TimesheetID)
        self.assertIsNone(reloaded.ClientApprovedAt)
        self.assertEqual(reloaded.Status, TimesheetStatus.SUBMITTED)
        self.assertEqual([c.ContactID for c in self.chain.list_client_contacts(ADMIN, CLIENT)], [self.viewer_contact.ContactID])

    def test_contacts_are_managed_inside_their_organization(self):
        assign(self.db, 20, "manager", organization_id=5)
        assign(self.db, 21, "manager", organization_id=6)
        theirs = self.chain.create_client_contact(21, CLIENT, "Org 6 PIC", organization_id=6, can_approve_timesheet=True)
        ours = self.chain.create_client_contact(20, CLIENT, "Org 5 PIC", organization_id=5)
        self.assertEqual(theirs.OrganizationID, 6)

        with self.assertRaises(PermissionDenied):
            self.chain.set_client_contact_active(20, theirs.ContactID, False)
        with self.assertRaises(PermissionDenied):
            self.chain.set_client_contact_active(20, self.contact.ContactID, False)
        with self.assertRaises(PermissionDenied):
            self.chain.set_client_contact_active(20, 9999, False)
        with self.assertRaises(NotFound):
            self.chain.set_client_contact_active(ADMIN, 9999, False)
        self.assertTrue(self.db.get(ClientContact, theirs.ContactID).IsActive)
        self.assertTrue(self.db.get(ClientContact, self.contact.ContactID).IsActive)

        self.assertFalse(self.chain.set_client_contact_active(20, ours.ContactID, False).IsActive)
        visible = self.chain.list_client_contacts(20, CLIENT, organization_id=5, active_only=False)
        self.assertEqual(sorted(c.Name for c in visible), ["Accountant", "Org 5 PIC", "Site Manager"])
        with self.assertRaises(PermissionDenied):
            self.chain.list_client_contacts(20, CLIENT)

        timesheet = self._submitted()
        with self.assertRaises(PermissionDenied):
            self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, theirs.ContactID, "sig")
        self.assertIsNone(self.db.get(RentalTimesheet, timesheet.TimesheetID).ClientApprovedAt)

    def test_unknown_timesheet_is_only_reported_to_authorized_callers(self):
        assign(self.db, 22, "supervisor", organization_id=5)
        timesheet = self._submitted()
        for timesheet_id in (timesheet.TimesheetID, 9999):
            with self.assertRaises(PermissionDenied):
                self.chain.verify_timesheet(22, timesheet_id, approved=True)
            with self.assertRaises(PermissionDenied):
                self.chain.get_timesheet(22, timesheet_id)
        with self.assertRaises(NotFound):
            self.chain.verify_timesheet(SUPERVISOR, 9999, approved=True)
        self.assertEqual(self.chain.get_timesheet(VIEWER, timesheet.TimesheetID).Status, TimesheetStatus.SUBMITTED)

    def test_client_cannot_sign_a_draft(self):
        timesheet = self._record()
        with self.assertRaises(StateConflict):
            self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "sig")

    def test_dispute_needs_notes_and_revision_restarts_both_tracks(self):
        timesheet = self._submitted()
        self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "sig")
        with self.assertRaises(ValidationError):
            self.chain.verify_timesheet(SUPERVISOR, timesheet.TimesheetID, approved=False)

        self.chain.verify_timesheet(SUPERVISOR, timesheet.TimesheetID, approved=False, notes="Hour meter photo missing")
        self.assertEqual(timesheet.Status, TimesheetStatus.DISPUTED)
        self.assertEqual(timesheet.VerifierStatus, VerifierStatus.DISPUTED)

        with self.assertRaises(StateConflict):
            self.chain.update_timesheet(CHECKER, timesheet.TimesheetID, operating_hours=Decimal("9"))
        self.chain.revise_timesheet(CHECKER, timesheet.TimesheetID, operating_hours=Decimal("9"), photos=["meter.jpg"])
        self.assertEqual(timesheet.Status, TimesheetStatus.REVISED)
        self.assertEqual(timesheet.VerifierStatus, VerifierStatus.PENDING)
        self.assertIsNone(timesheet.ClientApprovedAt)
        self.assertIsNone(timesheet.ClientSignature)
        self.assertEqual(timesheet.OvertimeHours, Decimal("1.00"))

        self.chain.submit_timesheet(CHECKER, timesheet.TimesheetID)
        self.chain.verify_timesheet(SUPERVISOR, timesheet.TimesheetID, approved=True)
        self.chain.client_approve_timesheet(LIAISON, timesheet.TimesheetID, self.contact.ContactID, "sig-2")
        self.assertEqual(timesheet.Status, TimesheetStatus.APPROVED)

    def test_only_submitted_records_can_be_verified(self):
        timesheet = self._record()
        with self.assertRaises(StateConflict):
            self.chain.verify_timesheet(SUPERVISOR, timesheet.TimesheetID, approved=True)

    def test_recording_checker_cannot_verify(self):
        timesheet = self.chain.create_timesheet(ADMIN, self.rental.RentalID, date(2024, 1, 8), operating_hours=Decimal("8"))
        self.chain.submit_timesheet(ADMIN, timesheet.TimesheetID)
        with self.assertRaises(PermissionDenied):
            self.chain.verify_timesheet(ADMIN, timesheet.TimesheetID, approved=True)
        self.assertEqual(self.db.get(RentalTimesheet, timesheet.TimesheetID).VerifierStatus, VerifierStatus.PENDING)

    def test_checker_lacks_verify_permission(self):
        timesheet = self._submitted()
        with self.assertRaises(PermissionDenied):
            self.chain.verify_timesheet(CHECKER, timesheet.TimesheetID, approved=True)

    def test_update_only_by_recording_checker_while_editable(self):
        timesheet = self._record()
        with self.assertRaises(PermissionDenied):
            self.chain.update_timesheet(ADMIN, timesheet.TimesheetID, operating_hours=Decimal("7"))
        self.chain.update_timesheet(CHECKER, timesheet.TimesheetID, operating_hours=Decimal("7"), hm_km_end=Decimal("1520"))
        self.assertEqual(timesheet.OvertimeHours, Decimal("0.00"))
        self.assertEqual(timesheet.HmKmUsage, Decimal("20.00"))
        self.assertEqual(timesheet.Version, 1)

        self.chain.submit_timesheet(CHECKER, timesheet.TimesheetID)
        with self.assertRaises(StateConflict):
            self.chain.update_timesheet(CHECKER, timesheet.TimesheetID, operating_hours=Decimal("6"))
        with self.assertRaises(StateConflict):
            self.chain.submit_timesheet(CHECKER, timesheet.TimesheetID)

    def test_summary_totals_only_approved_days(self):
        approved = self._submitted()
        self.chain.verify_timesheet(SUPERVISOR, approved.TimesheetID, approved=True)
        self.chain.client_approve_timesheet(LIAISON, approved.TimesheetID, self.contact.ContactID, "sig")
        self._record(work_date=date(2024, 1, 8), operating_hours=Decimal("12"))

        summary = self.chain.get_timesheet_summary(VIEWER, self.rental.RentalID)
        self.assertEqual(summary.approved_days, 1)
        self.assertEqual(summary.operating_hours, Decimal("10.00"))
        self.assertEqual(summary.overtime_hours, Decimal("2.00"))
        self.assertEqual(summary.hm_km_usage, Decimal("10.00"))

        listed = self.chain.list_timesheets(VIEWER, self.rental.RentalID)
        self.assertEqual([t.WorkDate for t in listed], [date(2024, 1, 8), date(2024, 1, 9)])


if __name__ == "__main__":
    unittest.main()
