import numpy as np
import pytest

SILK_HEADER = b"#!SILK_V3"
FLUSH_TRAILER = b"\xffFLUSH"


def make_silk(samples) -> bytes:
    """Fake SILK payload: header followed by the PCM the fake decoder returns."""
    return SILK_HEADER + np.asarray(samples, dtype="<i2").tobytes()


class FakeDecoder:
    """Strips the header and returns the rest as PCM; anything else is corrupt."""

    def __init__(self):
        self.calls = []

    def decode(self, data: bytes, sample_rate: int) -> bytes:
        self.calls.append((len(data), sample_rate))
        if not data.startswith(SILK_HEADER):
            raise RuntimeError("not a SILK v3 stream")
        return data[len(SILK_HEADER):]


class FakeEncoder:
    """Echoes the PCM it receives, then a fixed trailer on flush."""

    instances: list = []

    def __init__(self):
        self.settings = None
        self.encoded_input = None
        type(self).instances.append(self)

    def configure(self, channels, sample_rate, bitrate_kbps, quality):
        self.settings = (channels, sample_rate, bitrate_kbps, quality)

    def max_buffer_size(self, sample_count):
        return 2 * sample_count + len(FLUSH_TRAILER)

    def encode(self, samples, out):
        data = samples.tobytes()
        self.encoded_input = data
        out[:len(data)] = data
        return len(data)

    def flush(self, out):
        out[:len(FLUSH_TRAILER)] = FLUSH_TRAILER
        return len(FLUSH_TRAILER)


@pytest.fixture
def decoder():
    return FakeDecoder()


@pytest.fixture
def encoder_factory():
    FakeEncoder.instances = []
    return FakeEncoder


@pytest.fixture
def silk_tree(tmp_path):
    """Three decodable files (one nested), one corrupt file and some noise."""
    root = tmp_path / "voices"
    (root / "chat" / "2024").mkdir(parents=True)
    (root / "a.silk").write_bytes(make_silk([1, -1, 256]))
    (root / "chat" / "b.silk").write_bytes(make_silk([0] * 10))
    (root / "chat" / "2024" / "c.silk").write_bytes(make_silk([32767, -32768]))
    (root / "chat" / "broken.silk").write_bytes(b"garbage")
    (root / "notes.txt").write_text("not audio")
    (root / "LOUD.SILK").write_bytes(make_silk([5]))
    return root


@pytest.fixture(autouse=True)
def reset_logger():
    """main() installs console/file handlers; drop them between tests."""
    yield
    from silk2mp3 import logger

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
