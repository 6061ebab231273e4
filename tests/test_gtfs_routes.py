"""Tests for GTFSRouteSource."""

import sys
import unittest
from pathlib import Path

# Add src to path so we can import buspulse
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from buspulse.errors import ConfigurationError
from buspulse.gtfs_routes import GTFSRouteSource
from buspulse.models import RouteStop

ROUTES_CSV = """route_id,agency_id,route_short_name,route_long_name,route_type
R1,BUS,307,,3
R2,BUS,,Circle Line,3
R3,BUS,99,,3
"""

TRIPS_CSV = """route_id,service_id,trip_id,trip_headsign,direction_id
R1,WK,T1,To Y,0
R1,WK,T2,To Y,0
R1,WK,T3,To X,1
R1,WK,T5,Alternate,0
R2,WK,T4,,0
"""

STOP_TIMES_CSV = """trip_id,arrival_time,departure_time,stop_id,stop_sequence
T1,08:00:00,08:00:00,sa1,1
T1,08:10:00,08:10:00,sy,2
T2,09:05:00,09:05:00,sb,3
T2,09:00:00,09:00:00,sx,1
T2,09:02:00,09:02:00,sa1,2
T2,09:10:00,09:10:00,sy,4
T3,10:00:00,10:00:00,sy,1
T3,10:10:00,10:10:00,sa2,2
T5,11:00:00,11:00:00,sx,1
T5,11:02:00,11:02:00,sa1,2
T5,11:05:00,11:05:00,sc,3
T5,11:10:00,11:10:00,sy,4
T4,12:00:00,12:00:00,sa1,1
T4,12:05:00,12:05:00,s_unlisted,2
T9,13:00:00,13:00:00,sx,1
"""

STOPS_CSV = """stop_id,stop_name,stop_lat,stop_lon
sx,X,25.00,121.00
sa1,A,25.01,121.01
sa2,A,25.01,121.01
sb,B,25.02,121.02
sc,C,25.03,121.03
sy,Y,25.04,121.04
"""


class TestGTFSRouteSource(unittest.TestCase):
    """Test building route definitions from GTFS static data."""

    def setUp(self):
        """Set up test fixtures."""
        self.source = GTFSRouteSource()
        self.source.load_from_text(ROUTES_CSV, TRIPS_CSV, STOP_TIMES_CSV, STOPS_CSV)

    def test_longest_trip_is_representative(self):
        """Test that the longest trip defines a direction's stops."""
        detail = self.source.get_route_detail("R1")

        self.assertEqual(detail.route_name, "307")
        self.assertEqual([s.name for s in detail.outbound_stops], ["X", "A", "B", "Y"])
        self.assertEqual(detail.outbound_label, "To Y")

    def test_inbound_direction(self):
        """Test building the inbound stop sequence."""
        detail = self.source.get_route_detail("R1")

        self.assertEqual(
            detail.inbound_stops,
            [RouteStop(name="Y", stop_id="sy"), RouteStop(name="A", stop_id="sa2")],
        )
        self.assertEqual(detail.inbound_label, "To X")

    def test_long_name_and_default_labels(self):
        """Test route naming and default direction labels."""
        detail = self.source.get_route_detail("R2")

        self.assertEqual(detail.route_name, "Circle Line")
        self.assertEqual(detail.outbound_label, "Outbound")
        self.assertEqual(detail.inbound_stops, [])

    def test_stop_missing_from_stops_file_uses_its_id(self):
        """Test that an unknown stop is named by its ID."""
        detail = self.source.get_route_detail("R2")
        self.assertEqual(detail.outbound_stops[-1], RouteStop(name="s_unlisted", stop_id="s_unlisted"))

    def test_route_without_trips_is_unknown(self):
        """Test that a route with no trips has no detail."""
        self.assertIsNone(self.source.get_route_detail("R3"))
        self.assertIsNone(self.source.get_route_detail("R404"))

    def test_routes_at_stop(self):
        """Test looking up the routes serving a stop."""
        self.assertEqual(self.source.route_ids_at_stop("sa1"), ["R1", "R2"])
        self.assertEqual(self.source.route_ids_at_stop("sc"), ["R1"])
        self.assertEqual(self.source.route_ids_at_stop("nowhere"), [])

    def test_missing_file_is_a_configuration_error(self):
        """Test that a missing GTFS file is a configuration error."""
        with self.assertRaises(ConfigurationError):
            GTFSRouteSource().load_from_dir("/nonexistent/gtfs")


if __name__ == "__main__":
    unittest.main()
