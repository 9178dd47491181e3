"""Meeting synchronization engine -- sync state, queue, hosts, lifecycle, auto-end.

Keeps each event's and session's provider meeting consistent with what the
organizer asked for, allocates provider host accounts under a concurrency
cap, and ends meetings that overran their schedule. Worker loops in
worker.py drive the provider clients from MeetingSyncRepository.
"""
