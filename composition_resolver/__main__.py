from composition_resolver.cli import main

main()
