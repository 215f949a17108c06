# GitForge test suite
# - unit/: pure logic (diff parsing, access rules, queues, tokens, payloads)
# - integration/: API endpoints, git and LFS transport, workers and the CLI
