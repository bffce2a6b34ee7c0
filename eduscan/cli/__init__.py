"""Command line interfaces for the EduScan engine."""
