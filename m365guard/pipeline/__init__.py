"""Scan pipeline: verdict state machine and rescans."""
