from warden.service.audit import AuditLogger, LoggingAuditSink


class _BrokenSink:
    def record(self, event):
        raise IOError("disk full")


def test_emit_builds_event_with_clock(clock, audit_sink):
    audit = AuditLogger(audit_sink, clock=clock)
    audit.emit(
        "login_success",
        "authentication",
        success=True,
        user_id="u1",
        session_id="s1",
        ip_address="10.0.0.9",
        metadata={"remember_me": True},
    )
    (event,) = audit_sink.events
    assert event.event_type == "login_success"
    assert event.event_category == "authentication"
    assert event.created_at == clock()
    assert event.metadata == {"remember_me": True}


def test_sink_failure_is_swallowed(clock):
    audit = AuditLogger(_BrokenSink(), clock=clock)
    audit.emit("logout", "authentication", success=True)


def test_default_sink_logs():
    audit = AuditLogger()
    assert isinstance(audit.sink, LoggingAuditSink)
    audit.emit("login_failed", "authentication", success=False, error_message="invalid_password")


def test_metadata_is_copied(clock, audit_sink):
    meta = {"k": "v"}
    AuditLogger(audit_sink, clock=clock).emit("x", "y", success=True, metadata=meta)
    meta["k"] = "changed"
    assert audit_sink.events[0].metadata == {"k": "v"}
