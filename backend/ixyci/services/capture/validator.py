from typing import Dict, List
from ixyci.core.logging import get_logger
from ixyci.models.capture import Anomaly, CaptureExpectation, CaptureResult, Verdict
from ixyci.services.capture.pcap import read_capture, sequence_number

logger = get_logger("capture_validator")

# Anomaly kinds that do not fail the verdict on their own; missing packets are
# judged against the loss tolerance instead.
_TOLERATED_KINDS = {"missing"}


class CaptureValidator:
    def validate(self, capture: bytes, expectation: CaptureExpectation) -> CaptureResult:
        """
        Decode a capture file and judge it against `expectation`.

        Raises MalformedCapture only when the global header is unusable. A capture that
        decodes but does not meet the expectation yields a verdict with passed=False.
        The result depends on nothing but the arguments.
        """
        header, packets = read_capture(capture)

        summaries = []
        anomalies: List[Anomaly] = []
        sequences: Dict[int, int] = {}  # sequence number -> first record index
        observed = 0
        ignored = 0
        last_seq = None

        for packet in packets:
            summary = packet.summary
            summaries.append(summary)

            if not summary.fully_decoded:
                kind = "truncated" if "truncated by end of capture" in summary.decode_error else "decode"
                anomalies.append(Anomaly(kind=kind, index=summary.index, reason=summary.decode_error))
                continue

            if summary.transport != expectation.transport:
                logger.debug(f"ignoring non-{expectation.transport} record {summary.index}")
                ignored += 1
                continue

            problem = self._check_packet(summary, packet.payload, expectation)
            if problem:
                anomalies.append(Anomaly(kind=problem[0], index=summary.index, reason=problem[1]))
                continue

            observed += 1
            if expectation.sequence_offset is None:
                continue

            seq = sequence_number(packet.payload, expectation.sequence_offset, expectation.sequence_byteorder)
            if seq is None:
                anomalies.append(Anomaly(kind="malformed", index=summary.index,
                                         reason="payload too short for a sequence number"))
                continue
            if seq in sequences:
                if not expectation.allow_duplicates:
                    anomalies.append(Anomaly(kind="duplicate", index=summary.index,
                                             reason=f"sequence number {seq} already seen in record {sequences[seq]}"))
                continue
            sequences[seq] = summary.index
            if expectation.require_order and last_seq is not None and seq <= last_seq:
                anomalies.append(Anomaly(kind="reordered", index=summary.index,
                                         reason=f"sequence number {seq} after {last_seq}"))
            last_seq = seq if last_seq is None else max(last_seq, seq)

        if sequences:
            anomalies.extend(self._check_sequences(sequences, expectation))

        expected = expectation.packet_count
        if not (expected - expectation.loss_tolerance <= observed <= expected):
            anomalies.append(Anomaly(
                kind="count_mismatch",
                reason=f"expected {expected} packets (loss tolerance {expectation.loss_tolerance}), observed {observed}",
            ))

        missing = sum(1 for a in anomalies if a.kind == "missing")
        blocking = [a for a in anomalies if a.kind not in _TOLERATED_KINDS]
        passed = not blocking and missing <= expectation.loss_tolerance

        verdict = Verdict(
            passed=passed,
            expected_count=expected,
            observed_count=observed,
            ignored_count=ignored,
            anomalies=tuple(anomalies),
        )
        logger.info(verdict.summary())
        return CaptureResult(
            version=header.version,
            snaplen=header.snaplen,
            link_type=header.link_type,
            packets=tuple(summaries),
            verdict=verdict,
        )

    def _check_packet(self, summary, payload: bytes, expectation: CaptureExpectation):
        if expectation.udp_length is not None and summary.transport == "udp" \
                and summary.transport_length != expectation.udp_length:
            return ("malformed", f"udp length {summary.transport_length}, expected {expectation.udp_length}")
        if expectation.payload_prefix and not payload.startswith(expectation.payload_prefix):
            return ("malformed", f"payload does not start with {expectation.payload_prefix!r}")
        for name, value in expectation.match_fields:
            actual = getattr(summary, name, None)
            if actual != value:
                return ("field_mismatch", f"{name} is {actual!r}, expected {value!r}")
        return None

    def _check_sequences(self, sequences: Dict[int, int], expectation: CaptureExpectation) -> List[Anomaly]:
        anomalies = []
        n = expectation.packet_count
        start = expectation.sequence_start if expectation.sequence_start is not None else min(sequences)
        limit = max(n, 1) * expectation.max_sequence_factor
        for seq in sorted(sequences):
            if seq > limit:
                anomalies.append(Anomaly(kind="out_of_range", index=sequences[seq],
                                         reason=f"sequence number {seq} exceeds {limit}"))
        for seq in range(start, start + n):
            if seq not in sequences:
                anomalies.append(Anomaly(kind="missing", index=seq, reason=f"packet with sequence number {seq} not captured"))
        return anomalies


capture_validator = CaptureValidator()
