"""
Tests for LocalReceiver.

The lifecycle tests mock the AE; the loopback test runs a real storage SCP
on a free local port and sends it a C-STORE with pynetdicom.
"""

import socket
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from pydicom.uid import ExplicitVRLittleEndian
from pynetdicom import AE, evt

from rtexport.exceptions import ReceiverError
from rtexport.services.dicom.receiver import LocalReceiver
from rtexport.services.export.session import ExportSession

from tests.utils import RS1, RS_SERIES, make_dataset


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestReceiverLifecycle:
    """Tests for start/stop with a mocked AE."""

    def test_start_does_not_block(self, session: ExportSession) -> None:
        with patch("rtexport.services.dicom.receiver.AE") as ae_cls:
            receiver = LocalReceiver(session, ae_title="RTEXPORT", port=11112)
            receiver.start()

            ae_cls.return_value.start_server.assert_called_once()
            call = ae_cls.return_value.start_server.call_args
            assert call.args[0] == ("0.0.0.0", 11112)
            assert call.kwargs["block"] is False
            events = [event for event, _ in call.kwargs["evt_handlers"]]
            assert events == [evt.EVT_C_ECHO, evt.EVT_C_STORE]
            assert receiver.is_running

    def test_double_start_raises(self, session: ExportSession) -> None:
        with patch("rtexport.services.dicom.receiver.AE"):
            receiver = LocalReceiver(session, ae_title="RTEXPORT", port=11112)
            receiver.start()

            with pytest.raises(ReceiverError):
                receiver.start()

    def test_bind_failure(self, session: ExportSession) -> None:
        with patch("rtexport.services.dicom.receiver.AE") as ae_cls:
            ae_cls.return_value.start_server.side_effect = OSError("Address already in use")
            receiver = LocalReceiver(session, ae_title="RTEXPORT", port=11112)

            with pytest.raises(ReceiverError, match="Address already in use"):
                receiver.start()
            assert not receiver.is_running

    def test_stop_shuts_server_down(self, session: ExportSession) -> None:
        with patch("rtexport.services.dicom.receiver.AE") as ae_cls:
            server = MagicMock()
            ae_cls.return_value.start_server.return_value = server

            with LocalReceiver(session, ae_title="RTEXPORT", port=11112) as receiver:
                assert receiver.is_running

            server.shutdown.assert_called_once()
            assert not receiver.is_running

    def test_stop_when_not_started(self, session: ExportSession) -> None:
        LocalReceiver(session, ae_title="RTEXPORT", port=11112).stop()


class TestLoopbackStore:
    def test_c_store_written_to_route(self, session: ExportSession, export_root: Path) -> None:
        """Test an instance sent over the network lands in its routed folder."""
        port = free_port()
        destination = export_root / "12345" / "C1" / "CT 1"
        session.routes.register(RS_SERIES, destination)
        ds = make_dataset(RS1, RS_SERIES, "RTSTRUCT")

        with LocalReceiver(session, ae_title="RTEXPORT", port=port, host="127.0.0.1"):
            scu = AE(ae_title="ARCHIVE")
            scu.add_requested_context(ds.SOPClassUID, ExplicitVRLittleEndian)
            assoc = scu.associate("127.0.0.1", port, ae_title="RTEXPORT")
            assert assoc.is_established
            try:
                status = assoc.send_c_store(ds)
            finally:
                assoc.release()

        assert status.Status == 0x0000
        assert (destination / "Structure" / f"{RS1}.dcm").exists()
        assert session.routes.received_count(RS_SERIES) == 1
