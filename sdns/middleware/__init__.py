"""Handler chain, middleware registry and the built-in DNS handlers."""