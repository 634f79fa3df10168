"""Pure, synchronous encoders and decoders: CSV rows, prompts, JSONL."""
