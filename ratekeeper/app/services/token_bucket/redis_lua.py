"""Redis Lua script for atomic token bucket admission.

The whole read-refill-decide-write cycle runs inside one script so that
concurrent checks for the same key cannot both spend the same token.
"""

# KEYS[1]: bucket hash (fields: tokens, last_refill)
# ARGV[1]: burst (capacity), ARGV[2]: refill rate in tokens/second,
# ARGV[3]: now in epoch ms, ARGV[4]: idle TTL in seconds
#
# Returns {allowed, tokens, retry_after_ms}. tokens comes back as a string:
# Redis truncates Lua numbers to integers on the way out.
TOKEN_BUCKET_SCRIPT = """
    local key = KEYS[1]
    local burst = tonumber(ARGV[1])
    local refill_rate = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])

    local data = redis.call('HMGET', key, 'tokens', 'last_refill')
    local tokens = tonumber(data[1])
    local last_refill = tonumber(data[2])

    -- Lazy creation at full capacity
    if tokens == nil or last_refill == nil then
        tokens = burst
        last_refill = now_ms
    end

    -- Clock anomalies clamp to zero elapsed and keep the later baseline
    local elapsed_ms = math.max(0, now_ms - last_refill)
    if now_ms > last_refill then
        last_refill = now_ms
    end

    tokens = tokens + (elapsed_ms / 1000.0) * refill_rate
    tokens = math.max(0, math.min(burst, tokens))

    local allowed = 0
    local retry_after_ms = 0

    if tokens >= 1 then
        tokens = tokens - 1
        allowed = 1
    else
        local deficit = 1 - tokens
        retry_after_ms = math.ceil((deficit / refill_rate) * 1000)
    end

    local encoded = string.format('%.17g', tokens)
    redis.call('HSET', key, 'tokens', encoded, 'last_refill', string.format('%d', last_refill))
    redis.call('EXPIRE', key, ttl)

    return {allowed, encoded, retry_after_ms}
"""
