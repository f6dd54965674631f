"""Header exchange between peers: messages, options, peer scoring and tracking, sessions, server and client."""