"""Pluggable task executors run by workers for every claimed job."""
