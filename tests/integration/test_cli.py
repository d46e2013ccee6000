#!/usr/bin/env python3
"""
End-to-end tests for the parkcore command line on a temporary SQLite file
"""

import io
import json
import logging
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from parkcore import main as cli


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        root = Path(self.tmp.name)
        self.config_path = root / "garage.json"
        self.config_path.write_text(json.dumps({
            "layout": {
                "floors": 1,
                "bays_per_floor": 1,
                "spots_per_bay": 2,
                "bay_spot_types": {"1": "compact"},
            },
        }))
        self.database = f"sqlite:///{root / 'garage.db'}"

        patcher = patch.object(cli, "setup_logging", return_value=logging.getLogger("parkcore"))
        patcher.start()
        self.addCleanup(patcher.stop)

    def run_cli(self, *args):
        out = io.StringIO()
        with redirect_stdout(out):
            code = cli.main(["--config", str(self.config_path), "--database", self.database, *args])
        return code, json.loads(out.getvalue())

    def test_round_trip(self):
        code, result = self.run_cli("init-garage")
        self.assertEqual(code, 0)
        self.assertEqual(result["data"], {"added_spots": 2, "total_spots": 2})

        code, result = self.run_cli("check-in", "abc123", "compact", "--at", "2024-03-01T08:00:00")
        self.assertEqual(code, 0)
        self.assertEqual(result["data"]["spot"]["id"], "F1-B1-S1")

        code, result = self.run_cli("simulate-checkout", "ABC123", "--at", "2024-03-01T09:10:00")
        self.assertEqual(code, 0)
        self.assertTrue(result["data"]["simulated"])

        code, result = self.run_cli("check-out", "ABC123", "--at", "2024-03-01T09:10:00")
        self.assertEqual(code, 0)
        self.assertEqual(result["data"]["amount_due"], "8.00")
        self.assertEqual(result["data"]["duration"]["hours"], 1)

        code, result = self.run_cli("stats")
        self.assertEqual(code, 0)
        self.assertEqual(result["data"]["checkout"]["completed_sessions"], 1)

    def test_errors_exit_non_zero(self):
        self.run_cli("init-garage")
        code, result = self.run_cli("check-out", "NOPE1")
        self.assertEqual(code, 1)
        self.assertEqual(result["error"], "VEHICLE_NOT_FOUND")

        self.run_cli("check-in", "CAR1", "compact")
        self.run_cli("check-in", "CAR2", "compact")
        code, result = self.run_cli("check-in", "CAR3", "compact")
        self.assertEqual(code, 1)
        self.assertEqual(result["error"], "NO_AVAILABLE_SPOT")

    def test_simulate_assignment_and_ready(self):
        self.run_cli("init-garage")
        code, result = self.run_cli("simulate-assignment", "compact")
        self.assertEqual(code, 0)
        self.assertEqual(result["data"]["spot"]["id"], "F1-B1-S1")

        code, result = self.run_cli("simulate-assignment", "oversized")
        self.assertEqual(code, 1)
        self.assertFalse(result["data"]["success"])

        self.run_cli("check-in", "CAR1", "compact")
        code, result = self.run_cli("ready", "--min-minutes", "0")
        self.assertEqual(code, 0)
        self.assertEqual([r["license_plate"] for r in result["data"]], ["CAR1"])

        code, result = self.run_cli("force-checkout", "CAR1", "--reason", "testing")
        self.assertEqual(code, 0)
        self.assertEqual(result["data"]["reason"], "testing")


if __name__ == "__main__":
    unittest.main()
