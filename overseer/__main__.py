from overseer.cli import main

raise SystemExit(main())
