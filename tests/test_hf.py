"""HFBackend against a tiny randomly initialised Llama model."""

import pytest

torch = pytest.importorskip("torch")
transformers = pytest.importorskip("transformers")

from turnkv_engine.turnkv_config import ModelConfiguration, SamplerSettings, TurnRole
from turnkv_engine.turnkv_conversation import ConversationLog
from turnkv_engine.turnkv_engine import TurnKVEngine
from turnkv_engine.turnkv_hf import HFBackend
from turnkv_engine.turnkv_render import ChatTemplateRenderer
from turnkv_engine.turnkv_state import DecodeError, StopReason

EOS_ID = 256
BOS_ID = 257


class ByteTokenizer:
    """Sentencepiece-style byte-fallback vocabulary: one `<0xNN>` piece per byte."""
    bos_token = "<s>"
    eos_token = "</s>"
    eos_token_id = EOS_ID
    bos_token_id = BOS_ID
    all_special_ids = [EOS_ID, BOS_ID]
    chat_template = None

    def encode(self, text, add_special_tokens=True):
        ids = list(text.encode("utf-8"))
        return [BOS_ID] + ids if add_special_tokens else ids

    def _piece(self, token_id):
        if token_id == EOS_ID:
            return self.eos_token
        if token_id == BOS_ID:
            return self.bos_token
        return f"<0x{token_id:02X}>"

    def convert_ids_to_tokens(self, ids):
        if isinstance(ids, int):
            return self._piece(ids)
        return [self._piece(i) for i in ids]


@pytest.fixture(scope="module")
def tiny_model():
    torch.manual_seed(0)
    config = transformers.LlamaConfig(
        vocab_size=258,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=128,
        bos_token_id=BOS_ID,
        eos_token_id=EOS_ID,
    )
    return transformers.LlamaForCausalLM(config).eval()


@pytest.fixture
def hf_backend(tiny_model, logger):
    return HFBackend(tiny_model, ByteTokenizer(), logger, context_capacity=4096, max_batch_size=4,
                     sampler=SamplerSettings(temperature=0.0))


def _full_forward_argmax(model, tokens):
    with torch.inference_mode():
        logits = model(input_ids=torch.tensor([tokens])).logits
    return int(torch.argmax(logits[0, -1]).item())


def _decode(backend, tokens, start=0):
    backend.decode_batch(tokens, list(range(start, start + len(tokens))), [False] * (len(tokens) - 1) + [True])


class TestHFBackend:
    def test_capacity_is_clamped_to_the_model_limit(self, hf_backend):
        assert hf_backend.context_capacity == 128
        assert hf_backend.max_batch_size == 4

    def test_incremental_decode_matches_a_full_forward_pass(self, hf_backend, tiny_model):
        tokens = [BOS_ID] + list(b"hello world")
        hf_backend.decode_batch(tokens[:5], list(range(5)), [False] * 5)
        _decode(hf_backend, tokens[5:], start=5)

        assert hf_backend.sequence_length == len(tokens)
        assert hf_backend.sample_next() == _full_forward_argmax(tiny_model, tokens)

    def test_invalidate_then_reingest_a_different_suffix(self, hf_backend, tiny_model):
        _decode(hf_backend, [BOS_ID] + list(b"abcdefg"))

        hf_backend.invalidate_from(4)
        new_tokens = [BOS_ID] + list(b"abcXYZ")
        _decode(hf_backend, new_tokens[4:], start=4)

        assert hf_backend.sequence_length == len(new_tokens)
        assert hf_backend.sample_next() == _full_forward_argmax(tiny_model, new_tokens)

    def test_non_contiguous_positions_are_rejected(self, hf_backend):
        _decode(hf_backend, [BOS_ID, 1, 2])

        with pytest.raises(DecodeError):
            hf_backend.decode_batch([3], [7], [True])
        assert hf_backend.sequence_length == 3

    def test_sampling_requires_output_logits(self, hf_backend):
        hf_backend.decode_batch([BOS_ID, 1], [0, 1], [False, False])
        with pytest.raises(DecodeError):
            hf_backend.sample_next()

    def test_sampler_errors_surface_as_decode_errors(self, hf_backend, monkeypatch):
        def nan_probabilities(scores, settings):
            raise RuntimeError("probability tensor contains either `inf`, `nan` or element < 0")

        monkeypatch.setattr(hf_backend, "_sample", nan_probabilities)
        _decode(hf_backend, [BOS_ID, 1])

        with pytest.raises(DecodeError, match="Sampling failed"):
            hf_backend.sample_next()

    def test_seeded_sampling_is_reproducible(self, tiny_model, logger):
        picks = []
        for _ in range(2):
            backend = HFBackend(tiny_model, ByteTokenizer(), logger, context_capacity=64,
                                sampler=SamplerSettings(temperature=1.0, seed=1234))
            _decode(backend, [BOS_ID] + list(b"seed"))
            picks.append(backend.sample_next())
        assert picks[0] == picks[1]

    def test_token_pieces_map_back_to_bytes(self, hf_backend):
        assert hf_backend.token_to_bytes(0xE2) == b"\xe2"
        assert hf_backend.token_to_bytes(ord("a")) == b"a"
        assert hf_backend.is_end_marker(EOS_ID)
        assert not hf_backend.is_end_marker(ord("a"))

    def test_leading_marker_is_not_duplicated(self, hf_backend):
        assert hf_backend.tokenize("<s>x", True) == list(b"<s>x")
        assert hf_backend.tokenize("x", True) == [BOS_ID, ord("x")]


class TestEngineWithHF:
    @pytest.mark.asyncio
    async def test_turns_keep_tracker_and_cache_in_sync(self, hf_backend, logger):
        config = ModelConfiguration(context_length=128, max_generation_length=6, reserved_context_buffer=8,
                                    max_batch_size=4, sampler=SamplerSettings(temperature=0.0))
        engine = TurnKVEngine(instance_id="hf")
        await engine.attach(hf_backend, ChatTemplateRenderer(hf_backend.tokenizer, logger), config)
        log = ConversationLog()
        log.add(TurnRole.USER, "hi")

        first = await engine.run_generation_turn(log)
        assert first.stop_reason in (StopReason.END_MARKER, StopReason.MAX_LENGTH)
        assert engine.resident_token_count == hf_backend.sequence_length

        log.add(TurnRole.USER, "again")
        second = await engine.run_generation_turn(log)

        assert second.generated_tokens <= 6
        assert engine.resident_token_count == hf_backend.sequence_length
        assert second.new_prompt_tokens < second.prompt_tokens
