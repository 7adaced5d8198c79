"""
Pipeline services.

Per-click decision chain, in call order:
- access_control (with rate_limiter): admission of the visitor
- schedule_evaluator, smart_redirects, variant_selector: choice of target
- masking: presentation of the target
- resolution_service: LinkResolver, the single resolve() entry point

Side effects and read side:
- click_recorder, webhook_dispatcher, background_tasks
- analytics_service

Configuration and creation:
- link_service, link_settings, domain_safety, link_config, config_cache
"""
