"""Tests for process label enrichment."""

from conftest import make_process

from processscope.enrichment import (
    BUILTIN_RULES,
    EnrichmentRule,
    ProcessEnricher,
    resolve_template,
)

UVICORN_ARGS = ["/usr/bin/python3", "-m", "uvicorn", "atlas.main:app", "--port", "8080"]


class TestResolveTemplate:
    def test_uvicorn_label(self):
        process = make_process(name="python3", arguments=UVICORN_ARGS)
        label = resolve_template("uvicorn {argv_after:uvicorn|first} (port {port})", process)
        assert label == "uvicorn atlas.main:app (port 8080)"

    def test_argv_after_missing_token(self):
        process = make_process(arguments=["python3", "app.py"])
        assert resolve_template("run {argv_after:celery|first}", process) == "run"

    def test_argv_after_token_is_last(self):
        process = make_process(arguments=["python3", "-m", "celery"])
        assert resolve_template("Celery {argv_after:celery|first}", process) == "Celery"

    def test_argv_after_uses_first_occurrence(self):
        process = make_process(arguments=["go", "run", "main.go", "run", "other.go"])
        assert resolve_template("{argv_after:run|first}", process) == "main.go"

    def test_argv_value_forms(self):
        equals = make_process(arguments=["app", "--env=prod"])
        separate = make_process(arguments=["app", "--env", "staging"])
        missing = make_process(arguments=["app"])
        template = "{argv_value:--env|default:dev}"
        assert resolve_template(template, equals) == "prod"
        assert resolve_template(template, separate) == "staging"
        assert resolve_template(template, missing) == "dev"

    def test_argv_match_basename(self):
        path_arg = make_process(arguments=["python3", "/srv/tools/sync.py"])
        script_arg = make_process(arguments=["node", "server.js"])
        no_match = make_process(name="python3", arguments=["python3", "-c", "print(1)"])
        assert resolve_template("{argv_match_basename}", path_arg) == "sync.py"
        assert resolve_template("{argv_match_basename}", script_arg) == "server.js"
        assert resolve_template("{argv_match_basename}", no_match) == "python3"

    def test_cwd_basename(self):
        process = make_process(working_directory="/Users/dev/projects/atlas")
        assert resolve_template("Flask {cwd_basename}", process) == "Flask atlas"

    def test_cwd_unknown(self):
        process = make_process(name="flask", working_directory=None)
        assert resolve_template("Flask {cwd_basename}", process) == "Flask"

    def test_port_forms(self):
        cases = [
            (["rails", "-p", "3000"], "3000"),
            (["sshd", "-P", "22"], "22"),
            (["app", "--port=9000"], "9000"),
        ]
        for arguments, expected in cases:
            process = make_process(name=arguments[0], arguments=arguments)
            assert resolve_template("{port}", process) == expected

    def test_empty_parentheses_removed(self):
        process = make_process(name="node", arguments=["node"], working_directory="/srv/shop")
        assert resolve_template("Express {cwd_basename} ({port})", process) == "Express shop"

    def test_unknown_placeholder_kept_literally(self):
        process = make_process(name="python3")
        assert resolve_template("{bogus} {name}", process) == "{bogus} python3"

    def test_unclosed_brace_kept(self):
        process = make_process(name="python3")
        assert resolve_template("{name} {oops", process) == "python3 {oops"

    def test_unknown_brace_rescanned(self):
        """A stray brace before a real placeholder does not swallow it."""
        process = make_process(name="python3")
        assert resolve_template("{{name}", process) == "{python3"

    def test_substituted_text_not_rescanned(self):
        process = make_process(name="python3", arguments=["python3", "--port", "{name}"])
        assert resolve_template("port {port}", process) == "port {name}"

    def test_empty_result_falls_back_to_name(self):
        process = make_process(name="ruby", arguments=["ruby"])
        assert resolve_template("{cwd_basename} ({port})", process) == "ruby"


class TestEnrichmentRule:
    def test_process_name_matches_executable_basename(self):
        rule = EnrichmentRule(name="py", process_name="python3", template="Py")
        process = make_process(name="Python", executable_path="/usr/local/bin/python3")
        assert rule.matches(process)

    def test_process_name_case_insensitive(self):
        rule = EnrichmentRule(name="node", process_name="Node", template="Node")
        assert rule.matches(make_process(name="node"))
        assert not rule.matches(make_process(name="nodemon"))

    def test_argv_contains_is_substring(self):
        rule = EnrichmentRule(name="celery", argv_contains="CELERY", template="c")
        assert rule.matches(make_process(arguments=["python3", "-m", "celery", "worker"]))
        assert not rule.matches(make_process(arguments=["python3", "worker"]))

    def test_argv_regex(self):
        rule = EnrichmentRule(name="worker", argv_regex=r"worker-\d+", template="w")
        assert rule.matches(make_process(arguments=["svc", "worker-12"]))
        assert not rule.matches(make_process(arguments=["svc", "worker-x"]))

    def test_invalid_regex_never_matches(self):
        rule = EnrichmentRule(name="broken", argv_regex="(unclosed", template="x")
        assert not rule.matches(make_process(arguments=["(unclosed"]))

    def test_no_matchers_matches_everything(self):
        rule = EnrichmentRule(name="any", template="{name}")
        assert rule.label(make_process(name="zsh")) == "zsh"

    def test_all_matchers_must_pass(self):
        rule = EnrichmentRule(
            name="uvicorn", process_name="python3", argv_contains="uvicorn", template="u"
        )
        assert rule.label(make_process(name="node", arguments=["uvicorn"])) is None


class TestProcessEnricher:
    def test_first_matching_rule_wins(self):
        specific = EnrichmentRule(name="specific", argv_contains="uvicorn", template="Specific")
        generic = EnrichmentRule(name="generic", process_name="python3", template="Generic")
        process = make_process(arguments=UVICORN_ARGS)

        assert ProcessEnricher([specific, generic]).enrich(process) == "Specific"
        assert ProcessEnricher([generic, specific]).enrich(process) == "Generic"

    def test_priority_beats_order(self):
        low = EnrichmentRule(name="low", template="Low")
        high = EnrichmentRule(name="high", template="High", priority=10)
        enricher = ProcessEnricher([low, high])
        assert enricher.enrich(make_process()) == "High"
        assert [r.name for r in enricher.rules] == ["high", "low"]

    def test_equal_priority_keeps_order(self):
        rules = [EnrichmentRule(name=str(i), template=str(i)) for i in range(5)]
        assert [r.name for r in ProcessEnricher(rules).rules] == ["0", "1", "2", "3", "4"]

    def test_no_match_returns_none(self):
        enricher = ProcessEnricher([EnrichmentRule(name="n", process_name="node", template="n")])
        assert enricher.enrich(make_process(name="zsh")) is None

    def test_enrich_batch_omits_unmatched(self):
        enricher = ProcessEnricher.with_defaults()
        processes = [
            make_process(pid=1, name="python3", arguments=UVICORN_ARGS),
            make_process(pid=2, name="zsh", arguments=["zsh"]),
        ]
        assert enricher.enrich_batch(processes) == {1: "uvicorn atlas.main:app (port 8080)"}


class TestBuiltinRules:
    def test_rule_names_unique(self):
        names = [rule.name for rule in BUILTIN_RULES]
        assert len(names) == len(set(names))

    def test_generic_python_fallback(self):
        enricher = ProcessEnricher.with_defaults()
        process = make_process(arguments=["python3", "/Users/dev/scripts/backup.py"])
        assert enricher.enrich(process) == "Python backup.py"

    def test_django_uses_cwd(self):
        enricher = ProcessEnricher.with_defaults()
        process = make_process(
            arguments=["python3", "manage.py", "runserver"],
            working_directory="/Users/dev/shop",
        )
        assert enricher.enrich(process) == "Django shop"

    def test_vite_before_generic_node(self):
        enricher = ProcessEnricher.with_defaults()
        process = make_process(
            name="node",
            arguments=["node", "/app/node_modules/.bin/vite"],
            working_directory="/Users/dev/site",
        )
        assert enricher.enrich(process) == "Vite site"

    def test_docker_desktop(self):
        enricher = ProcessEnricher.with_defaults()
        assert enricher.enrich(make_process(name="com.docker.backend")) == "Docker Desktop"

    def test_ssh_host(self):
        enricher = ProcessEnricher.with_defaults()
        process = make_process(name="ssh", arguments=["ssh", "build.example.com"])
        assert enricher.enrich(process) == "SSH build.example.com"
