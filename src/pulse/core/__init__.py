"""Pulse Core -- filesystem-coordinated heartbeat primitives.

Manifesto:
    Every agent runtime that opens the same configuration directory wants
    the periodic check-in to happen, but only once.  There is no daemon to
    ask and no database to lock, only a local directory that many unrelated
    processes can see.  ``pulse.core`` turns that directory into a
    coordination medium: one renewable lease file elects the leader, two
    small whole-file channels carry settings and trigger requests, and the
    leader alone arms the check-in timer.

Architecture::

    Layer 1 -- Type System & Errors
        errors.py          Structured error hierarchy (PulseError, StorageError)
        logging.py         structlog configuration

    Layer 2 -- Filesystem Primitives
        fs.py              Atomic write, exclusive create, markers, pid liveness

    Layer 3 -- Scheduling
        scheduling/        Lease, channels, state, scheduler, executor, runner

    Layer 4 -- Configuration
        config/            PulseSettings (pydantic-settings) + cached loader

Tags:
    pulse-core, leader-election, heartbeat, filesystem-coordination

Doc-Types:
    package-overview, architecture-map, module-index
"""
